# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Goal evaluation for Ledger Rollup.

Compares the current value of a period (the accumulated value of a merge
aggregate, or the last running total of a prefix-sum period) against its
target and classifies the period:

- NO_DATA: nothing recorded for the period, or no target.
- PENDING: a target exists but no value has been recorded yet.
- MET / NOT_MET: comparison according to the series direction:
    * higher_is_better (collections): met when accumulated >= target,
    * lower_is_better (debt reduction): met when accumulated <= target.

Everything here is read-only.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .db import Aggregate, EntriesFilter, SQLiteEntryStore
from .periods import validate_period_key
from .series import GoalDirection, SeriesDefinition, require_strategy


class GoalStatus(str, Enum):
    NO_DATA = "no_data"
    PENDING = "pending"
    MET = "met"
    NOT_MET = "not_met"


@dataclass(frozen=True)
class GoalEvaluation:
    """Status of one period against its target."""

    series_id: str
    period: str
    dimension: Optional[str]
    status: GoalStatus
    accumulated: Optional[float]
    target: Optional[float]
    progress_pct: Optional[float]


def classify(
    accumulated: Optional[float],
    target: Optional[float],
    direction: GoalDirection = "higher_is_better",
) -> GoalStatus:
    """Classify a value against its target (see module docstring)."""
    if target is None:
        return GoalStatus.NO_DATA
    if accumulated is None:
        return GoalStatus.PENDING

    if direction == "lower_is_better":
        met = accumulated <= target
    else:
        met = accumulated >= target
    return GoalStatus.MET if met else GoalStatus.NOT_MET


def classify_aggregate(
    aggregate: Optional[Aggregate],
    direction: GoalDirection = "higher_is_better",
) -> GoalStatus:
    """Classify a merge aggregate; a missing aggregate means no data."""
    if aggregate is None:
        return GoalStatus.NO_DATA
    return classify(aggregate.accumulated, aggregate.target, direction)


def progress_percent(accumulated: Optional[float], target: Optional[float]) -> Optional[float]:
    """Return accumulated / target in percent, or None when undefined."""
    if accumulated is None or target is None or target <= 0:
        return None
    return accumulated / target * 100.0


def evaluate_period(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period_key: str,
    *,
    dimension: Optional[str] = None,
    target: Optional[float] = None,
) -> GoalEvaluation:
    """
    Evaluate one period of a series against its target.

    For merge series the aggregate of (period, dimension) provides both the
    accumulated value and the target (``target`` overrides the stored one
    when given). For prefix-sum series the last running total of the period
    is the accumulated value and ``target`` must come from the caller;
    running totals span the whole period, so ``dimension`` is not used.
    """
    require_strategy(series, "merge", "prefix_sum")
    validate_period_key(period_key, series.granularity)

    if series.is_merge:
        aggregate = store.get_aggregate(series.series_id, period_key, dimension)
        if aggregate is None:
            accumulated, goal = None, target
            status = GoalStatus.NO_DATA
        else:
            accumulated = aggregate.accumulated
            goal = target if target is not None else aggregate.target
            status = classify(accumulated, goal, series.direction)
    else:
        entries = store.query(
            series.series_id,
            EntriesFilter(period=period_key),
            order_by=("date", "ASC"),
        )
        goal = target
        if not entries:
            accumulated = None
            status = GoalStatus.NO_DATA
        else:
            accumulated = entries[-1].running_total
            status = classify(accumulated, goal, series.direction)

    return GoalEvaluation(
        series_id=series.series_id,
        period=period_key,
        dimension=dimension,
        status=status,
        accumulated=accumulated,
        target=goal,
        progress_pct=progress_percent(accumulated, goal),
    )
