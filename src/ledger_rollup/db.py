# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Entry store for Ledger Rollup.

This module provides the persistent store the rollup engine reads from and
writes to. It is backed by SQLite and is responsible for:

- Initializing the database schema.
- Creating, updating, deleting and querying dated entries of any series.
- Applying atomic batches of field updates (running totals).
- Maintaining per-(series, period, dimension) aggregates, including an
  atomic increment used by the merge strategy.
- Exposing explicit transactions so that read-then-write sequences run
  against a consistent snapshot.

------------------------------------------------------------------------------
Schema Overview
------------------------------------------------------------------------------

1) entries
   One row per dated numeric contribution.

   Columns:
   - id                  INTEGER PRIMARY KEY AUTOINCREMENT (creation order)
   - series_id           TEXT    NOT NULL
   - date                TEXT    NOT NULL  -- ISO date "YYYY-MM-DD"
   - period              TEXT    NOT NULL  -- period key (see periods.py)
   - dimension           TEXT    NOT NULL DEFAULT ''  -- '' = no dimension
   - value_cents         INTEGER NOT NULL  -- signed value in cents
   - running_total_cents INTEGER           -- prefix-sum series only
   - created_at          TEXT    NOT NULL  -- UTC timestamp
   - updated_at          TEXT              -- UTC timestamp of last write

2) aggregates
   One row per (series_id, period, dimension) for merge series.

   Columns:
   - id                  INTEGER PRIMARY KEY AUTOINCREMENT
   - series_id           TEXT    NOT NULL
   - period              TEXT    NOT NULL
   - dimension           TEXT    NOT NULL DEFAULT ''
   - target_cents        INTEGER           -- goal for the period
   - accumulated_cents   INTEGER           -- NULL until first contribution
   - created_at          TEXT    NOT NULL
   - updated_at          TEXT
   UNIQUE (series_id, period, dimension)

------------------------------------------------------------------------------
Transactions
------------------------------------------------------------------------------

Connections are opened in autocommit mode. ``SQLiteEntryStore.transaction()``
issues ``BEGIN IMMEDIATE`` so that the write lock is taken before the first
read: two writers touching the same database are serialized, and the loser
waits up to ``DatabaseConfig.timeout`` seconds before a
TransactionConflictError is raised. Every store method called inside a
``with store.transaction():`` block joins that transaction; outside of it,
each call runs in its own short transaction. Nested ``transaction()`` blocks
join the outermost one.

The active connection is kept in thread-local storage, so a store instance
can be shared between threads as long as each thread runs its own
transactions.

All ``sqlite3.Error`` exceptions are wrapped into StoreError (or
TransactionConflictError when the database is locked).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import ConflictError, NotFoundError, StoreError, TransactionConflictError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Database configuration for Ledger Rollup.

    Attributes
    ----------
    engine:
        Database engine identifier. Only "sqlite" is supported.
    path:
        Path to the SQLite database file.
    timeout:
        Seconds to wait for a concurrent writer to release its lock.
    """

    engine: str
    path: Path
    timeout: float = 5.0


@dataclass(frozen=True)
class Entry:
    """
    Stored entry of a series.

    ``dimension`` is None when the entry has no secondary key.
    ``running_total`` is only maintained for prefix-sum series.
    """

    id: int
    series_id: str
    date: date
    period: str
    dimension: Optional[str]
    value: float
    running_total: Optional[float]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


@dataclass(frozen=True)
class NewEntry:
    """Data required to insert a new entry (period already derived)."""

    date: date
    period: str
    value: float
    dimension: Optional[str] = None


@dataclass(frozen=True)
class EntryUpdate:
    """
    Fields that can be updated on an existing entry.

    Only non-None attributes are applied. An empty string for ``dimension``
    clears it. ``period`` must be provided together with ``date`` when the
    date moves to another period.
    """

    date: Optional[date] = None
    period: Optional[str] = None
    dimension: Optional[str] = None
    value: Optional[float] = None


@dataclass(frozen=True)
class EntriesFilter:
    """
    Filters used to query entries of one series.

    Attributes
    ----------
    period:
        Exact period key.
    dimension:
        Exact dimension. None means "any dimension"; use "" to match entries
        without a dimension.
    start, end:
        Inclusive date bounds.
    """

    period: Optional[str] = None
    dimension: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None


@dataclass(frozen=True)
class BatchUpdate:
    """
    One element of an atomic batch: field values to set on an entry.

    Supported field names: "running_total", "value".
    """

    entry_id: int
    fields: Mapping[str, Optional[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class Aggregate:
    """Per-(series, period, dimension) accumulator of a merge series."""

    id: int
    series_id: str
    period: str
    dimension: Optional[str]
    target: Optional[float]
    accumulated: Optional[float]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


# Public field name -> column for batch updates.
_BATCH_COLUMNS: dict[str, str] = {
    "running_total": "running_total_cents",
    "value": "value_cents",
}

_ORDER_COLUMNS: dict[str, str] = {
    "date": "date",
    "id": "id",
    "period": "period",
    "value": "value_cents",
}

_ENTRY_COLUMNS = """
    id, series_id, date, period, dimension, value_cents,
    running_total_cents, created_at, updated_at
"""

_AGGREGATE_COLUMNS = """
    id, series_id, period, dimension, target_cents, accumulated_cents,
    created_at, updated_at
"""

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def to_cents(value: float) -> int:
    """Convert a monetary / numeric value to signed integer cents."""
    return int(round(float(value) * 100))


def from_cents(cents: Optional[int]) -> Optional[float]:
    """Convert integer cents back to a float value (None stays None)."""
    if cents is None:
        return None
    return float(cents) / 100.0


def _now_utc_iso() -> str:
    """Return the current UTC datetime as ISO string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _ensure_sqlite(cfg: DatabaseConfig) -> None:
    """Raise if the configuration does not refer to a supported engine."""
    if cfg.engine.lower() != "sqlite":
        msg = (
            f"Unsupported database engine: {cfg.engine!r}. "
            "Only 'sqlite' is supported for now."
        )
        raise ValueError(msg)


def _wrap_sqlite_error(exc: sqlite3.Error, action: str) -> StoreError:
    """Translate a sqlite3 exception into the store error taxonomy."""
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and (
        "locked" in message or "busy" in message
    ):
        return TransactionConflictError(f"Database is locked while trying to {action}.")
    return StoreError(f"Failed to {action}: {exc}")


def _row_to_entry(row: tuple) -> Entry:
    """
    Convert a database row into an Entry instance.

    Expected row layout:
      (id, series_id, date, period, dimension, value_cents,
       running_total_cents, created_at, updated_at)
    """
    (
        entry_id,
        series_id,
        date_str,
        period,
        dimension,
        value_cents,
        running_total_cents,
        created_at_str,
        updated_at_str,
    ) = row

    return Entry(
        id=entry_id,
        series_id=series_id,
        date=date.fromisoformat(date_str),
        period=period,
        dimension=dimension or None,
        value=float(value_cents) / 100.0,
        running_total=from_cents(running_total_cents),
        created_at=_parse_ts(created_at_str),
        updated_at=_parse_ts(updated_at_str),
    )


def _row_to_aggregate(row: tuple) -> Aggregate:
    """
    Convert a database row into an Aggregate instance.

    Expected row layout:
      (id, series_id, period, dimension, target_cents, accumulated_cents,
       created_at, updated_at)
    """
    (
        agg_id,
        series_id,
        period,
        dimension,
        target_cents,
        accumulated_cents,
        created_at_str,
        updated_at_str,
    ) = row

    return Aggregate(
        id=agg_id,
        series_id=series_id,
        period=period,
        dimension=dimension or None,
        target=from_cents(target_cents),
        accumulated=from_cents(accumulated_cents),
        created_at=_parse_ts(created_at_str),
        updated_at=_parse_ts(updated_at_str),
    )


def _create_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Create tables and indexes if they do not exist yet.

    This function is idempotent and can be called multiple times safely.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS entries (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            series_id           TEXT    NOT NULL,
            date                TEXT    NOT NULL,  -- ISO date 'YYYY-MM-DD'
            period              TEXT    NOT NULL,
            dimension           TEXT    NOT NULL DEFAULT '',
            value_cents         INTEGER NOT NULL,
            running_total_cents INTEGER,
            created_at          TEXT    NOT NULL,
            updated_at          TEXT
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS aggregates (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            series_id         TEXT    NOT NULL,
            period            TEXT    NOT NULL,
            dimension         TEXT    NOT NULL DEFAULT '',
            target_cents      INTEGER,
            accumulated_cents INTEGER,
            created_at        TEXT    NOT NULL,
            updated_at        TEXT,

            UNIQUE (series_id, period, dimension)
        );
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_entries_series_period
            ON entries(series_id, period, dimension);
        """
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SQLiteEntryStore:
    """
    SQLite-backed entry store.

    The store is a plain handle: it holds no cached data, only the database
    configuration and the connection of the transaction currently running
    in the calling thread (if any).
    """

    def __init__(self, cfg: DatabaseConfig):
        _ensure_sqlite(cfg)
        self.cfg = cfg
        self._local = threading.local()
        self._schema_ready = False

    # -- connections ---------------------------------------------------------

    def _open(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.cfg.path,
                timeout=self.cfg.timeout,
                isolation_level=None,
            )
            conn.execute("PRAGMA foreign_keys = ON;")
        except sqlite3.Error as exc:
            raise _wrap_sqlite_error(exc, "open the database") from exc
        return conn

    def _active_conn(self) -> Optional[sqlite3.Connection]:
        return getattr(self._local, "conn", None)

    def init_database(self) -> None:
        """
        Initialize the database schema if needed.

        - Creates the SQLite file (and its parent directory) if missing.
        - Creates tables and indexes if they are missing.
        - Idempotent: calling it multiple times is safe.
        """
        self.cfg.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._open()
        try:
            _create_schema_if_needed(conn)
        except sqlite3.Error as exc:
            raise _wrap_sqlite_error(exc, "create the schema") from exc
        finally:
            conn.close()
        self._schema_ready = True

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed store calls in one immediate SQLite transaction.

        Commits on normal exit, rolls back on any exception. A nested call
        joins the outer transaction.
        """
        if self._active_conn() is not None:
            yield
            return

        if not self._schema_ready:
            self.init_database()

        conn = self._open()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as exc:
                raise _wrap_sqlite_error(exc, "begin a transaction") from exc

            self._local.conn = conn
            try:
                yield
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._local.conn = None

            try:
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise _wrap_sqlite_error(exc, "commit the transaction") from exc
        finally:
            conn.close()

    @contextmanager
    def _session(self, action: str) -> Iterator[sqlite3.Connection]:
        """Yield the active transaction connection, or a short-lived one."""
        conn = self._active_conn()
        owned = conn is None
        if owned:
            if not self._schema_ready:
                self.init_database()
            conn = self._open()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise _wrap_sqlite_error(exc, action) from exc
        finally:
            if owned:
                conn.close()

    # -- entries -------------------------------------------------------------

    def get_entry(self, entry_id: int) -> Optional[Entry]:
        """Load a single entry by id, or None if it does not exist."""
        with self._session(f"load entry #{entry_id}") as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id = ?;",
                (entry_id,),
            ).fetchone()

        if row is None:
            return None
        return _row_to_entry(row)

    def query(
        self,
        series_id: str,
        filters: Optional[EntriesFilter] = None,
        *,
        order_by: tuple[str, str] = ("date", "ASC"),
    ) -> list[Entry]:
        """
        Query entries of a series.

        Parameters
        ----------
        series_id:
            Series whose entries are returned.
        filters:
            Optional period / dimension / date-bound filters.
        order_by:
            (column, direction). Supported columns: "date", "id", "period",
            "value". Ties are always broken by id in the same direction, so
            equal dates keep creation order when sorting ascending.

        Raises
        ------
        ValueError
            If the ordering instruction is not supported.
        """
        column, direction = order_by
        if column not in _ORDER_COLUMNS:
            raise ValueError(f"Unsupported order_by column: {column!r}")
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise ValueError(f"Unsupported order_by direction: {direction!r}")

        clauses = ["series_id = ?"]
        params: list[object] = [series_id]

        f = filters or EntriesFilter()
        if f.period is not None:
            clauses.append("period = ?")
            params.append(f.period)
        if f.dimension is not None:
            clauses.append("dimension = ?")
            params.append(f.dimension)
        if f.start is not None:
            clauses.append("date >= ?")
            params.append(f.start.isoformat())
        if f.end is not None:
            clauses.append("date <= ?")
            params.append(f.end.isoformat())

        sql = (
            f"SELECT {_ENTRY_COLUMNS} FROM entries "
            f"WHERE {' AND '.join(clauses)} "
            f"ORDER BY {_ORDER_COLUMNS[column]} {direction}, id {direction};"
        )

        with self._session(f"query entries of {series_id!r}") as conn:
            rows = conn.execute(sql, params).fetchall()

        return [_row_to_entry(r) for r in rows]

    def create(self, series_id: str, new_entry: NewEntry) -> Entry:
        """Insert a new entry and return it as stored."""
        now = _now_utc_iso()
        with self._session(f"create an entry in {series_id!r}") as conn:
            cur = conn.execute(
                """
                INSERT INTO entries (
                    series_id,
                    date,
                    period,
                    dimension,
                    value_cents,
                    running_total_cents,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, NULL, ?, ?);
                """,
                (
                    series_id,
                    new_entry.date.isoformat(),
                    new_entry.period,
                    new_entry.dimension or "",
                    to_cents(new_entry.value),
                    now,
                    now,
                ),
            )
            entry_id = cur.lastrowid
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id = ?;",
                (entry_id,),
            ).fetchone()

        return _row_to_entry(row)

    def update(self, entry_id: int, update: EntryUpdate) -> Entry:
        """
        Apply a partial update to an existing entry.

        Raises
        ------
        ValueError
            If no fields are provided.
        NotFoundError
            If the entry does not exist.
        """
        fields: list[str] = []
        params: list[object] = []

        if update.date is not None:
            fields.append("date = ?")
            params.append(update.date.isoformat())
        if update.period is not None:
            fields.append("period = ?")
            params.append(update.period)
        if update.dimension is not None:
            fields.append("dimension = ?")
            params.append(update.dimension)
        if update.value is not None:
            fields.append("value_cents = ?")
            params.append(to_cents(update.value))

        if not fields:
            raise ValueError("No fields to update in EntryUpdate.")

        # Always update the updated_at timestamp
        fields.append("updated_at = ?")
        params.append(_now_utc_iso())
        params.append(entry_id)

        with self._session(f"update entry #{entry_id}") as conn:
            cur = conn.execute(
                f"""
                UPDATE entries
                   SET {", ".join(fields)}
                 WHERE id = ?;
                """,
                params,
            )
            if cur.rowcount == 0:
                raise NotFoundError(entry_id)
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id = ?;",
                (entry_id,),
            ).fetchone()

        return _row_to_entry(row)

    def delete(self, entry_id: int) -> None:
        """Physically delete an entry. Raises NotFoundError if missing."""
        with self._session(f"delete entry #{entry_id}") as conn:
            cur = conn.execute("DELETE FROM entries WHERE id = ?;", (entry_id,))
            if cur.rowcount == 0:
                raise NotFoundError(entry_id)

    def batch_write(self, updates: Sequence[BatchUpdate]) -> None:
        """
        Apply a batch of field updates atomically.

        Either every update is applied or none is: a missing entry or an
        unsupported field aborts and rolls back the whole batch.

        Raises
        ------
        ValueError
            If a field name is not supported.
        StoreError
            If an entry of the batch no longer exists or the write fails.
        """
        for upd in updates:
            unknown = set(upd.fields).difference(_BATCH_COLUMNS)
            if unknown:
                raise ValueError(
                    f"Unsupported batch field(s): {', '.join(sorted(unknown))}"
                )

        if not updates:
            return

        now = _now_utc_iso()
        with self.transaction():
            with self._session("apply a batch of updates") as conn:
                for upd in updates:
                    sets = [f"{_BATCH_COLUMNS[name]} = ?" for name in upd.fields]
                    params: list[object] = [
                        None if v is None else to_cents(v) for v in upd.fields.values()
                    ]
                    sets.append("updated_at = ?")
                    params.extend([now, upd.entry_id])
                    cur = conn.execute(
                        f"UPDATE entries SET {', '.join(sets)} WHERE id = ?;",
                        params,
                    )
                    if cur.rowcount == 0:
                        raise StoreError(
                            f"Entry #{upd.entry_id} disappeared during a batch write."
                        )

        logger.debug("Committed batch of %d entry update(s)", len(updates))

    def list_periods(self, series_id: str) -> list[str]:
        """Return the distinct period keys holding entries of a series."""
        with self._session(f"list periods of {series_id!r}") as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT period
                  FROM entries
                 WHERE series_id = ?
                 ORDER BY period;
                """,
                (series_id,),
            ).fetchall()
        return [r[0] for r in rows]

    def has_entries(self, series_id: Optional[str] = None) -> bool:
        """Return True if the store holds at least one entry (of the series)."""
        with self._session("check for entries") as conn:
            if series_id is None:
                row = conn.execute("SELECT 1 FROM entries LIMIT 1;").fetchone()
            else:
                row = conn.execute(
                    "SELECT 1 FROM entries WHERE series_id = ? LIMIT 1;",
                    (series_id,),
                ).fetchone()
        return row is not None

    # -- aggregates ----------------------------------------------------------

    def get_aggregate(
        self,
        series_id: str,
        period: str,
        dimension: Optional[str],
    ) -> Optional[Aggregate]:
        """Load the aggregate of (series, period, dimension), or None."""
        with self._session(f"load aggregate of {series_id!r}") as conn:
            row = conn.execute(
                f"""
                SELECT {_AGGREGATE_COLUMNS}
                  FROM aggregates
                 WHERE series_id = ? AND period = ? AND dimension = ?;
                """,
                (series_id, period, dimension or ""),
            ).fetchone()

        if row is None:
            return None
        return _row_to_aggregate(row)

    def _load_aggregate(self, conn: sqlite3.Connection, aggregate_id: int) -> Aggregate:
        row = conn.execute(
            f"SELECT {_AGGREGATE_COLUMNS} FROM aggregates WHERE id = ?;",
            (aggregate_id,),
        ).fetchone()
        if row is None:
            raise StoreError(f"Aggregate #{aggregate_id} does not exist.")
        return _row_to_aggregate(row)

    def insert_aggregate(
        self,
        series_id: str,
        period: str,
        dimension: Optional[str],
        *,
        target: Optional[float],
        accumulated: Optional[float],
    ) -> Aggregate:
        """
        Create the aggregate of (series, period, dimension).

        Raises
        ------
        ConflictError
            If the aggregate already exists (unique constraint).
        """
        now = _now_utc_iso()
        with self._session(f"create aggregate of {series_id!r}") as conn:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO aggregates (
                        series_id,
                        period,
                        dimension,
                        target_cents,
                        accumulated_cents,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        series_id,
                        period,
                        dimension or "",
                        None if target is None else to_cents(target),
                        None if accumulated is None else to_cents(accumulated),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(series_id, period, dimension) from exc
            return self._load_aggregate(conn, cur.lastrowid)

    def increment_aggregate(self, aggregate_id: int, delta: float) -> Aggregate:
        """Atomically add ``delta`` to the accumulated value of an aggregate."""
        with self._session(f"increment aggregate #{aggregate_id}") as conn:
            cur = conn.execute(
                """
                UPDATE aggregates
                   SET accumulated_cents = COALESCE(accumulated_cents, 0) + ?,
                       updated_at        = ?
                 WHERE id = ?;
                """,
                (to_cents(delta), _now_utc_iso(), aggregate_id),
            )
            if cur.rowcount == 0:
                raise StoreError(f"Aggregate #{aggregate_id} does not exist.")
            return self._load_aggregate(conn, aggregate_id)

    def update_aggregate_target(self, aggregate_id: int, target: float) -> Aggregate:
        """Replace the target of an existing aggregate."""
        with self._session(f"update target of aggregate #{aggregate_id}") as conn:
            cur = conn.execute(
                """
                UPDATE aggregates
                   SET target_cents = ?,
                       updated_at   = ?
                 WHERE id = ?;
                """,
                (to_cents(target), _now_utc_iso(), aggregate_id),
            )
            if cur.rowcount == 0:
                raise StoreError(f"Aggregate #{aggregate_id} does not exist.")
            return self._load_aggregate(conn, aggregate_id)

    def list_aggregates(
        self,
        series_id: str,
        period: Optional[str] = None,
    ) -> list[Aggregate]:
        """Return the aggregates of a series, ordered by period and dimension."""
        sql = f"SELECT {_AGGREGATE_COLUMNS} FROM aggregates WHERE series_id = ?"
        params: list[object] = [series_id]
        if period is not None:
            sql += " AND period = ?"
            params.append(period)
        sql += " ORDER BY period, dimension;"

        with self._session(f"list aggregates of {series_id!r}") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_aggregate(r) for r in rows]
