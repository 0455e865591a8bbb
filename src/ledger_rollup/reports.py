# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Reconciliation and summary tables for Ledger Rollup.

These helpers read the entry store and return pandas DataFrames. They never
write: a mismatch reported by ``audit_running_totals`` is repaired with
``engine.recompute_series`` (or the ``recompute`` CLI command).

Available tables:

- entries_frame:              raw entries of a series,
- audit_running_totals:       prefix-sum rows whose stored running total
                              differs from the expected one,
- find_uniqueness_violations: (period, dimension) keys holding more than one
                              entry in a unique series,
- goal_summary:               status of every aggregate of a merge series.
"""

from typing import Optional

import pandas as pd

from .db import EntriesFilter, SQLiteEntryStore
from .goals import classify, progress_percent
from .series import SeriesDefinition, require_strategy

ENTRY_COLUMNS = ["id", "date", "period", "dimension", "value", "running_total"]

AUDIT_COLUMNS = ENTRY_COLUMNS + ["expected_running_total"]

VIOLATION_COLUMNS = ["period", "dimension", "entries_count", "entry_ids"]

GOAL_COLUMNS = [
    "period",
    "dimension",
    "target",
    "accumulated",
    "status",
    "progress_pct",
]


def _to_cents(series: pd.Series) -> pd.Series:
    return (series.astype(float) * 100).round().astype("int64")


def entries_frame(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period: Optional[str] = None,
) -> pd.DataFrame:
    """
    Return the entries of a series as a DataFrame ordered by (date, id).

    Columns: id, date, period, dimension, value, running_total.
    ``dimension`` is an empty string for entries without one.
    """
    entries = store.query(
        series.series_id,
        EntriesFilter(period=period),
        order_by=("date", "ASC"),
    )
    rows = [
        {
            "id": e.id,
            "date": e.date,
            "period": e.period,
            "dimension": e.dimension or "",
            "value": e.value,
            "running_total": e.running_total,
        }
        for e in entries
    ]
    return pd.DataFrame(rows, columns=ENTRY_COLUMNS)


def audit_running_totals(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
) -> pd.DataFrame:
    """
    Compare stored running totals with their prefix-sum definition.

    The expected running total of each entry is the cumulative sum of the
    values of its period, ordered by (date, id). Sums are done in integer
    cents so that the comparison is exact.

    Returns
    -------
    pandas.DataFrame
        The inconsistent rows only (entries without a running total count as
        inconsistent), with the extra column ``expected_running_total``. An
        empty frame means the series is consistent.
    """
    require_strategy(series, "prefix_sum")

    df = entries_frame(store, series)
    if df.empty:
        return pd.DataFrame(columns=AUDIT_COLUMNS)

    df = df.sort_values(["period", "date", "id"], kind="stable").reset_index(drop=True)
    expected_cents = _to_cents(df["value"]).groupby(df["period"]).cumsum()
    df["expected_running_total"] = expected_cents / 100.0

    stored = df["running_total"].astype(float)
    stored_cents = (stored.fillna(0.0) * 100).round().astype("int64")
    mismatch = stored.isna() | (stored_cents != expected_cents)

    out = df.loc[mismatch, AUDIT_COLUMNS].reset_index(drop=True)
    return out


def find_uniqueness_violations(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
) -> pd.DataFrame:
    """
    List the (period, dimension) keys that hold more than one entry.

    Useful for data loaded before the series was declared unique, or
    written by another tool directly into the database.
    """
    df = entries_frame(store, series)
    if df.empty:
        return pd.DataFrame(columns=VIOLATION_COLUMNS)

    ids = df.sort_values("id", kind="stable").groupby(["period", "dimension"], sort=True)["id"]
    grouped = pd.DataFrame(
        {"entries_count": ids.count(), "entry_ids": ids.apply(list)}
    ).reset_index()
    out = grouped[grouped["entries_count"] > 1].reset_index(drop=True)
    return out[VIOLATION_COLUMNS]


def goal_summary(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period: Optional[str] = None,
) -> pd.DataFrame:
    """
    Return one row per aggregate of a merge series with its goal status.

    Columns: period, dimension, target, accumulated, status, progress_pct.
    ``status`` holds the GoalStatus value ("met", "not_met", ...).
    """
    require_strategy(series, "merge")

    rows = []
    for agg in store.list_aggregates(series.series_id, period):
        status = classify(agg.accumulated, agg.target, series.direction)
        rows.append(
            {
                "period": agg.period,
                "dimension": agg.dimension or "",
                "target": agg.target,
                "accumulated": agg.accumulated,
                "status": status.value,
                "progress_pct": progress_percent(agg.accumulated, agg.target),
            }
        )
    return pd.DataFrame(rows, columns=GOAL_COLUMNS)
