# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
High-level services for creating, editing and deleting entries.

This module sits between:
- the entry store in `db.py` and the rollup engine in `engine.py`, and
- user-facing layers such as the CLI, the CSV import or a web handler.

Each operation follows the same pipeline:

    validate → derive period → uniqueness guard → entry write(s)
             → prefix-sum recompute of every affected period

Responsibilities
----------------
1) create_entry
   - Derive the period key from the entry date and the series granularity.
   - Run the uniqueness guard and the insert in one store transaction.
   - Recompute the period for prefix-sum series.

2) update_entry
   - In-place update when the entry stays in its period (value, date within
     the period, dimension). The guard runs when the dimension changes.
   - When the new date falls in another period, the edit is a delete from
     the old period plus a create in the new one (single transaction), and
     both periods are recomputed. The returned entry has a new id.

3) delete_entry
   - Remove the entry and recompute its period. An emptied period needs no
     batch.

Failure semantics
-----------------
- ValidationError, NotFoundError and ConflictError are raised before any
  write.
- A StoreError on the entry write aborts before any recompute.
- A StoreError during the recompute leaves the entry write committed and
  the running totals of the period stale. This is logged at ERROR level and
  the error is re-raised; the next successful mutation of the period, or
  `engine.recompute_series`, restores consistency.

Merge-strategy series do not accept entries: their contributions go through
`engine.merge_contribution`.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from .db import EntryUpdate, Entry, NewEntry, SQLiteEntryStore
from .engine import (
    DEFAULT_MAX_ATTEMPTS,
    RecomputeResult,
    coerce_value,
    recompute_period,
)
from .errors import NotFoundError, StoreError, ValidationError
from .guard import check_create
from .periods import period_of
from .series import SeriesDefinition, require_strategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollupOptions:
    """
    Engine options applied by the services.

    Attributes
    ----------
    skip_unchanged:
        Only write running totals that actually change.
    max_attempts:
        Tries of a recompute when the store is locked by another writer.
    """

    skip_unchanged: bool = False
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


DEFAULT_OPTIONS = RollupOptions()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ensure_entry_series(series: SeriesDefinition) -> None:
    require_strategy(series, "prefix_sum", "none")


def _ensure_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if not isinstance(value, date):
        raise ValidationError(f"Invalid entry date: {value!r} (expected a date).")
    return value


def _load_entry(store: SQLiteEntryStore, series: SeriesDefinition, entry_id: int) -> Entry:
    entry = store.get_entry(entry_id)
    if entry is None or entry.series_id != series.series_id:
        raise NotFoundError(entry_id)
    return entry


def rollup_period(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period_key: str,
    options: RollupOptions,
) -> Optional[RecomputeResult]:
    """
    Recompute a period after a committed entry write.

    Does nothing (returns None) for series without the prefix-sum strategy.
    A StoreError is logged as leaving the period stale, then re-raised.
    """
    if not series.is_prefix_sum:
        return None
    try:
        return recompute_period(
            store,
            series,
            period_key,
            skip_unchanged=options.skip_unchanged,
            max_attempts=options.max_attempts,
        )
    except StoreError:
        logger.error(
            "Rollup of %s/%s failed after the entry write was committed; "
            "running totals of this period are stale until it is recomputed",
            series.series_id,
            period_key,
        )
        raise


def _reload(store: SQLiteEntryStore, entry_id: int) -> Entry:
    entry = store.get_entry(entry_id)
    if entry is None:
        msg = f"Entry #{entry_id} was just written but could not be reloaded."
        raise StoreError(msg)
    return entry


# ---------------------------------------------------------------------------
# CRUD services
# ---------------------------------------------------------------------------


def create_entry(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    entry_date: date,
    value: float,
    dimension: Optional[str] = None,
    *,
    options: RollupOptions = DEFAULT_OPTIONS,
) -> Entry:
    """
    Create an entry and bring the derived totals of its period up to date.

    Parameters
    ----------
    store:
        Entry store.
    series:
        Series receiving the entry ("prefix_sum" or "none" strategy).
    entry_date:
        Date of the entry; its period is derived from the series granularity.
    value:
        Signed amount or count.
    dimension:
        Optional secondary key (district, operation type, ...).
    options:
        Recompute options.

    Returns
    -------
    Entry
        The stored entry, including its running total for prefix-sum series.

    Raises
    ------
    ValidationError
        Invalid input or a merge-strategy series.
    ConflictError
        The series is unique and the (period, dimension) key is taken.
    StoreError
        The store failed (see module notes for the recompute case).
    """
    _ensure_entry_series(series)
    entry_date = _ensure_date(entry_date)
    amount = coerce_value(value, "value")
    period_key = period_of(entry_date, series.granularity)

    with store.transaction():
        check_create(store, series, period_key, dimension)
        entry = store.create(
            series.series_id,
            NewEntry(date=entry_date, period=period_key, value=amount, dimension=dimension),
        )

    logger.info(
        "Created entry #%d in %s/%s (%.2f)",
        entry.id,
        series.series_id,
        period_key,
        amount,
    )

    rollup_period(store, series, period_key, options)
    return _reload(store, entry.id)


def update_entry(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    entry_id: int,
    *,
    entry_date: Optional[date] = None,
    value: Optional[float] = None,
    dimension: Optional[str] = None,
    options: RollupOptions = DEFAULT_OPTIONS,
) -> Entry:
    """
    Edit an entry and recompute every period it touched.

    Only the provided fields change; pass ``dimension=""`` to clear the
    dimension. A date that moves the entry into another period is handled
    as delete-from-old-period + create-in-new-period, so the returned entry
    then carries a new id.

    Raises
    ------
    ValidationError
        No field provided, invalid input, or a merge-strategy series.
    NotFoundError
        The entry does not exist in this series.
    ConflictError
        The new (period, dimension) key is taken in a unique series.
    StoreError
        The store failed.
    """
    _ensure_entry_series(series)
    if entry_date is None and value is None and dimension is None:
        raise ValidationError("No fields to update.")
    if entry_date is not None:
        entry_date = _ensure_date(entry_date)
    amount = None if value is None else coerce_value(value, "value")

    with store.transaction():
        current = _load_entry(store, series, entry_id)

        new_date = entry_date or current.date
        new_period = period_of(new_date, series.granularity)
        new_dimension = current.dimension if dimension is None else (dimension or None)
        new_value = current.value if amount is None else amount

        moved = new_period != current.period
        if moved or new_dimension != current.dimension:
            check_create(store, series, new_period, new_dimension, exclude_id=current.id)

        if moved:
            store.delete(current.id)
            result = store.create(
                series.series_id,
                NewEntry(
                    date=new_date,
                    period=new_period,
                    value=new_value,
                    dimension=new_dimension,
                ),
            )
        else:
            result = store.update(
                current.id,
                EntryUpdate(
                    date=entry_date,
                    dimension=dimension,
                    value=amount,
                ),
            )

    if moved:
        logger.info(
            "Moved entry #%d of %s from %s to %s as entry #%d",
            current.id,
            series.series_id,
            current.period,
            new_period,
            result.id,
        )
        rollup_period(store, series, current.period, options)
        rollup_period(store, series, new_period, options)
    else:
        logger.info("Updated entry #%d in %s/%s", result.id, series.series_id, new_period)
        rollup_period(store, series, new_period, options)

    return _reload(store, result.id)


def delete_entry(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    entry_id: int,
    *,
    options: RollupOptions = DEFAULT_OPTIONS,
) -> Entry:
    """
    Delete an entry and recompute the running totals of its period.

    Returns
    -------
    Entry
        The entry as it was before deletion.

    Raises
    ------
    NotFoundError
        The entry does not exist in this series.
    """
    _ensure_entry_series(series)

    with store.transaction():
        entry = _load_entry(store, series, entry_id)
        store.delete(entry.id)

    logger.info("Deleted entry #%d from %s/%s", entry.id, series.series_id, entry.period)

    rollup_period(store, series, entry.period, options)
    return entry
