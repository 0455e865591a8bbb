# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
CSV import for Ledger Rollup.

This module reads bulk data from CSV files, normalizes it into a consistent
pandas structure and loads it into a series.

Expected input formats
----------------------

Column names are case-insensitive.

1) Entries (prefix-sum or plain series)
   ------------------------------------
       date, value[, dimension]

   - ``date``:      date of the entry (YYYY-MM-DD)
   - ``value``:     signed amount or count (alias: ``amount``)
   - ``dimension``: optional secondary key (alias: ``district``)

2) Contributions (merge series)
   ----------------------------
       period, dimension, delta[, target]

   - ``period``:    period key in the persisted shape of the series
                    granularity (alias: ``month``)
   - ``dimension``: secondary key, may be empty (alias: ``district``)
   - ``delta``:     contribution added to the aggregate (aliases: ``value``,
                    ``recovered``)
   - ``target``:    goal used when the aggregate does not exist yet (alias:
                    ``monthlygoal``)

Output schemas
--------------
``read_entries_csv`` returns the columns date (datetime.date), value (float)
and dimension (str, empty when absent). ``read_contributions_csv`` returns
period (str), dimension (str), delta (float) and target (float or NaN).

If the CSV structure does not match, a clear ValueError is raised.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional, Union

import pandas as pd

from .db import SQLiteEntryStore
from .engine import coerce_value, merge_contribution
from .entries_service import (
    DEFAULT_OPTIONS,
    RollupOptions,
    create_entry,
    rollup_period,
)
from .errors import ConflictError, ValidationError
from .periods import period_of, uniqueness_key
from .series import SeriesDefinition, require_strategy

logger = logging.getLogger(__name__)

_ENTRY_ALIASES = {"amount": "value", "district": "dimension"}

_CONTRIBUTION_ALIASES = {
    "month": "period",
    "district": "dimension",
    "value": "delta",
    "recovered": "delta",
    "monthlygoal": "target",
}


@dataclass
class ImportStats:
    """Outcome of a bulk import."""

    rows: int = 0
    imported: int = 0
    conflicts: int = 0
    periods: list[str] = field(default_factory=list)


def _normalize_columns(df: pd.DataFrame, aliases: dict[str, str]) -> pd.DataFrame:
    """Lower-case column names and apply aliases for missing canonical names."""
    df.columns = [str(c).lower().strip() for c in df.columns]
    cols = set(df.columns)
    renames = {
        alias: canonical
        for alias, canonical in aliases.items()
        if alias in cols and canonical not in cols
    }
    # Several aliases may target the same column; keep the first one found.
    seen: set[str] = set()
    for alias in list(renames):
        if renames[alias] in seen:
            del renames[alias]
        else:
            seen.add(renames[alias])
    return df.rename(columns=renames)


def _dimension_column(d: pd.DataFrame) -> pd.Series:
    if "dimension" not in d.columns:
        return pd.Series([""] * len(d), index=d.index, dtype=object)
    return d["dimension"].fillna("").astype(str).str.strip()


def _has_infinite(values: pd.Series) -> bool:
    return bool((values.abs() == float("inf")).any())


def read_entries_csv(path: Union[str, "os.PathLike[str]"]) -> pd.DataFrame:
    """
    Read dated entries from a CSV file and normalize them.

    Returns
    -------
    pandas.DataFrame
        Columns: date (datetime.date), value (float), dimension (str).

    Raises
    ------
    ValueError
        If the ``date`` or ``value`` column is missing, or if a date or a
        number cannot be parsed.
    """
    df = _normalize_columns(pd.read_csv(path), _ENTRY_ALIASES)

    required = {"date", "value"}
    if not required.issubset(df.columns):
        raise ValueError(
            "Invalid entries CSV structure. Expected columns: date, value"
            "[, dimension] (column names are case-insensitive; 'amount' and "
            "'district' are accepted as aliases)."
        )

    d = df.copy()

    # Parse date strictly: invalid dates should fail loudly
    try:
        d["date"] = pd.to_datetime(d["date"], errors="raise").dt.date
    except Exception as exc:  # noqa: BLE001
        raise ValueError("Invalid values in 'date' column.") from exc

    d["value"] = pd.to_numeric(d["value"], errors="coerce")
    if d["value"].isna().any() or _has_infinite(d["value"]):
        raise ValueError("Invalid numeric values in 'value' column.")

    d["dimension"] = _dimension_column(d)

    return d[["date", "value", "dimension"]].reset_index(drop=True)


def read_contributions_csv(path: Union[str, "os.PathLike[str]"]) -> pd.DataFrame:
    """
    Read merge contributions from a CSV file and normalize them.

    Period keys are kept as strings; their shape is checked against the
    series granularity at import time.

    Returns
    -------
    pandas.DataFrame
        Columns: period (str), dimension (str), delta (float), target (float,
        NaN when not provided).

    Raises
    ------
    ValueError
        If a required column is missing or a number cannot be parsed.
    """
    df = _normalize_columns(pd.read_csv(path), _CONTRIBUTION_ALIASES)

    required = {"period", "delta"}
    if not required.issubset(df.columns):
        raise ValueError(
            "Invalid contributions CSV structure. Expected columns: period, "
            "dimension, delta[, target] (column names are case-insensitive)."
        )

    d = df.copy()

    if d["period"].isna().any():
        raise ValueError("Missing values in 'period' column.")
    d["period"] = d["period"].astype(str).str.strip()

    d["delta"] = pd.to_numeric(d["delta"], errors="coerce")
    if d["delta"].isna().any() or _has_infinite(d["delta"]):
        raise ValueError("Invalid numeric values in 'delta' column.")

    if "target" in d.columns:
        raw_target = d["target"]
        d["target"] = pd.to_numeric(raw_target, errors="coerce")
        unparsed = d["target"].isna() & raw_target.notna()
        if unparsed.any() or _has_infinite(d["target"]):
            raise ValueError("Invalid numeric values in 'target' column.")
    else:
        d["target"] = float("nan")

    d["dimension"] = _dimension_column(d)

    return d[["period", "dimension", "delta", "target"]].reset_index(drop=True)


def _validated_entry_rows(
    series: SeriesDefinition, df: pd.DataFrame
) -> list[tuple[date, float, Optional[str]]]:
    """Check every row before anything is written; return (date, value, dimension)."""
    rows = []
    for line, row in enumerate(df.itertuples(index=False), start=1):
        try:
            entry_date = row.date
            if isinstance(entry_date, datetime):
                entry_date = entry_date.date()
            if not isinstance(entry_date, date):
                raise ValidationError(f"Invalid entry date: {row.date!r}.")
            value = coerce_value(row.value, "value")
            dimension = row.dimension or None
            uniqueness_key(period_of(entry_date, series.granularity), dimension)
        except ValidationError as exc:
            raise ValidationError(f"Row {line} of the entries file: {exc}") from exc
        rows.append((entry_date, value, dimension))
    return rows


def import_entries(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    df: pd.DataFrame,
    *,
    options: RollupOptions = DEFAULT_OPTIONS,
) -> ImportStats:
    """
    Create one entry per row of a normalized entries DataFrame.

    Every row is validated before the first write. Rows rejected by the
    uniqueness guard are counted and skipped instead of aborting the import.
    For prefix-sum series, every touched period is recomputed once after the
    rows are written, including when the store fails part way through.

    Raises
    ------
    ValidationError
        If a row holds invalid data. Nothing is imported in that case.
    StoreError
        If the store fails.
    """
    require_strategy(series, "prefix_sum", "none")
    rows = _validated_entry_rows(series, df)

    # Rows are written as plain entries; periods are rolled up once at the end.
    plain = replace(series, strategy="none")

    stats = ImportStats(rows=len(rows))
    touched: set[str] = set()

    try:
        for entry_date, value, dimension in rows:
            try:
                entry = create_entry(
                    store, plain, entry_date, value, dimension, options=options
                )
            except ConflictError as exc:
                stats.conflicts += 1
                logger.warning("Skipped CSV row for %s: %s", series.series_id, exc)
                continue

            stats.imported += 1
            touched.add(entry.period)
    finally:
        stats.periods = sorted(touched)
        for period_key in stats.periods:
            rollup_period(store, series, period_key, options)

    logger.info(
        "Imported %d/%d row(s) into %s (%d conflict(s))",
        stats.imported,
        stats.rows,
        series.series_id,
        stats.conflicts,
    )
    return stats


def import_contributions(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    df: pd.DataFrame,
    *,
    options: RollupOptions = DEFAULT_OPTIONS,
) -> ImportStats:
    """
    Merge every row of a normalized contributions DataFrame, in file order.

    Each row is one contribution: importing the same file twice counts its
    deltas twice.

    Raises
    ------
    ValidationError
        If a row is invalid, e.g. the first contribution of a key carries no
        target. Rows before it stay merged.
    """
    require_strategy(series, "merge")

    stats = ImportStats(rows=len(df))
    touched: set[str] = set()

    for line, row in enumerate(df.itertuples(index=False), start=1):
        target = None if pd.isna(row.target) else float(row.target)
        try:
            merge_contribution(
                store,
                series,
                row.period,
                row.dimension or None,
                float(row.delta),
                target=target,
                max_attempts=options.max_attempts,
            )
        except ValidationError as exc:
            raise ValidationError(f"Row {line} of the contributions file: {exc}") from exc

        stats.imported += 1
        touched.add(row.period)

    stats.periods = sorted(touched)
    logger.info(
        "Merged %d contribution(s) into %s over %d period(s)",
        stats.imported,
        series.series_id,
        len(stats.periods),
    )
    return stats
