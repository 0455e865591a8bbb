# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Rollup engine for Ledger Rollup.

This module keeps derived period aggregates consistent with their source
entries. It implements the two strategies a series can declare:

1. Prefix-sum ("prefix_sum")
   -------------------------
   Every entry of a period carries ``running_total``: the sum of the values
   of all entries of the same period ordered by (date, id) up to and
   including itself. After any create / update / delete in the period, the
   whole period is recomputed:

       recompute_period(store, series, period_key)

   reads all entries of the period, walks them in (date, id) order, and
   writes every running total in one atomic batch. The read and the batch
   run in a single store transaction, retried as a whole when the store
   reports a lock conflict (bounded by ``max_attempts``).

2. Monotonic merge ("merge")
   -------------------------
   One aggregate per (period, dimension) accumulates contributions:

       merge_contribution(store, series, period_key, dimension, delta, target=...)

   creates the aggregate on the first contribution (a target is then
   required) and otherwise adds ``delta`` with the store's atomic increment.
   Contributions are not deduplicated: merging the same delta twice counts
   it twice.

All functions are stateless: the store handle is always passed explicitly.
Amounts are summed as integer cents so that totals are exact to two
decimals.
"""

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Optional, TypeVar

from .db import (
    Aggregate,
    BatchUpdate,
    EntriesFilter,
    Entry,
    SQLiteEntryStore,
    to_cents,
)
from .errors import ConflictError, TransactionConflictError, ValidationError
from .periods import uniqueness_key, validate_period_key
from .series import SeriesDefinition, require_strategy

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

T = TypeVar("T")


@dataclass(frozen=True)
class RecomputeResult:
    """Outcome of a full prefix-sum recompute of one period."""

    series_id: str
    period: str
    entries_count: int
    updated_count: int
    period_total: float


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def coerce_value(raw: object, field: str) -> float:
    """
    Convert a caller-supplied number to float.

    Raises:
        ValidationError: if the value is missing, not numeric, or not finite.
    """
    if raw is None or isinstance(raw, bool):
        raise ValidationError(f"A numeric {field} is required.")
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field}: {raw!r} is not a number.") from exc
    if not math.isfinite(value):
        raise ValidationError(f"Invalid {field}: {raw!r} is not a finite number.")
    return value


def _run_with_retry(unit: Callable[[], T], *, max_attempts: int, description: str) -> T:
    """Run ``unit``, retrying it when the store reports a lock conflict."""
    if max_attempts < 1:
        raise ValidationError("max_attempts must be at least 1.")

    attempt = 1
    while True:
        try:
            return unit()
        except TransactionConflictError:
            if attempt >= max_attempts:
                logger.error(
                    "Giving up on %s after %d attempt(s): store is locked",
                    description,
                    attempt,
                )
                raise
            logger.warning(
                "Lock conflict on %s (attempt %d/%d), retrying",
                description,
                attempt,
                max_attempts,
            )
            attempt += 1


# ---------------------------------------------------------------------------
# Prefix-sum strategy
# ---------------------------------------------------------------------------


def compute_running_totals(entries: Sequence[Entry]) -> list[tuple[Entry, float]]:
    """
    Return each entry paired with its running total within the given set.

    Entries are ordered by date, ties broken by id (creation order). The
    caller is responsible for passing the entries of a single period.
    """
    ordered = sorted(entries, key=lambda e: (e.date, e.id))
    running_cents = 0
    out: list[tuple[Entry, float]] = []
    for entry in ordered:
        running_cents += to_cents(entry.value)
        out.append((entry, float(running_cents) / 100.0))
    return out


def _is_unchanged(entry: Entry, total: float) -> bool:
    return entry.running_total is not None and to_cents(entry.running_total) == to_cents(
        total
    )


def recompute_period(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period_key: str,
    *,
    skip_unchanged: bool = False,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> RecomputeResult:
    """
    Recompute every running total of one period of a prefix-sum series.

    Parameters
    ----------
    store:
        Entry store.
    series:
        A series declaring the "prefix_sum" strategy.
    period_key:
        Period to recompute.
    skip_unchanged:
        If True, only entries whose stored running total differs from the
        recomputed one are written. By default every entry is rewritten.
    max_attempts:
        Number of tries of the whole read-compute-write unit when the store
        is locked by another writer.

    Returns
    -------
    RecomputeResult
        Entries seen, entries written and the period total. An empty period
        issues no batch.

    Raises
    ------
    ValidationError
        If the series does not use the prefix-sum strategy.
    StoreError
        If the read or the batch write fails. Nothing of the batch is
        applied in that case.
    """
    require_strategy(series, "prefix_sum")

    def unit() -> RecomputeResult:
        with store.transaction():
            entries = store.query(
                series.series_id,
                EntriesFilter(period=period_key),
                order_by=("date", "ASC"),
            )
            totals = compute_running_totals(entries)

            updates = [
                BatchUpdate(entry_id=entry.id, fields={"running_total": total})
                for entry, total in totals
                if not (skip_unchanged and _is_unchanged(entry, total))
            ]
            if updates:
                store.batch_write(updates)
            else:
                logger.debug(
                    "No running total to write for %s/%s", series.series_id, period_key
                )

        return RecomputeResult(
            series_id=series.series_id,
            period=period_key,
            entries_count=len(totals),
            updated_count=len(updates),
            period_total=totals[-1][1] if totals else 0.0,
        )

    result = _run_with_retry(
        unit,
        max_attempts=max_attempts,
        description=f"recompute of {series.series_id}/{period_key}",
    )
    logger.info(
        "Recomputed %s/%s: %d entries, %d written, total %.2f",
        result.series_id,
        result.period,
        result.entries_count,
        result.updated_count,
        result.period_total,
    )
    return result


def recompute_series(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    *,
    skip_unchanged: bool = False,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> list[RecomputeResult]:
    """
    Recompute every period that holds entries of a prefix-sum series.

    This is the remedy for totals left stale by a rollup batch that failed
    after its entry write was committed.
    """
    require_strategy(series, "prefix_sum")
    return [
        recompute_period(
            store,
            series,
            period,
            skip_unchanged=skip_unchanged,
            max_attempts=max_attempts,
        )
        for period in store.list_periods(series.series_id)
    ]


# ---------------------------------------------------------------------------
# Monotonic-merge strategy
# ---------------------------------------------------------------------------


def merge_contribution(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period_key: str,
    dimension: Optional[str],
    delta: float,
    *,
    target: Optional[float] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> float:
    """
    Merge one contribution into the aggregate of (period, dimension).

    Parameters
    ----------
    store:
        Entry store.
    series:
        A series declaring the "merge" strategy.
    period_key:
        Period key in the persisted shape of the series granularity.
    dimension:
        Optional secondary key (e.g. district name).
    delta:
        Signed amount added to the accumulated value.
    target:
        Goal of the period. Required when the aggregate does not exist yet;
        ignored for an existing aggregate (use ``set_target`` to change it).

    Returns
    -------
    float
        The accumulated value after the merge.

    Raises
    ------
    ValidationError
        Wrong strategy, malformed period key or numbers, or no target on the
        first contribution. Nothing is written.
    StoreError
        If the store fails.
    """
    require_strategy(series, "merge")
    validate_period_key(period_key, series.granularity)
    uniqueness_key(period_key, dimension)
    delta_value = coerce_value(delta, "delta")
    target_value = None if target is None else coerce_value(target, "target")

    def unit() -> Aggregate:
        with store.transaction():
            aggregate = store.get_aggregate(series.series_id, period_key, dimension)
            if aggregate is None:
                if target_value is None:
                    raise ValidationError(
                        f"A target is required for the first contribution to "
                        f"{series.series_id}/{period_key}"
                        + (f"/{dimension}." if dimension else ".")
                    )
                try:
                    created = store.insert_aggregate(
                        series.series_id,
                        period_key,
                        dimension,
                        target=target_value,
                        accumulated=delta_value,
                    )
                except ConflictError:
                    # Created concurrently: merge into it instead.
                    aggregate = store.get_aggregate(series.series_id, period_key, dimension)
                else:
                    logger.info(
                        "Created aggregate %s/%s/%s with target %.2f",
                        series.series_id,
                        period_key,
                        dimension or "-",
                        target_value,
                    )
                    return created

            if target_value is not None and (
                aggregate.target is None or to_cents(aggregate.target) != to_cents(target_value)
            ):
                logger.warning(
                    "Ignoring target %.2f for existing aggregate %s/%s/%s "
                    "(current target: %s)",
                    target_value,
                    series.series_id,
                    period_key,
                    dimension or "-",
                    aggregate.target,
                )
            return store.increment_aggregate(aggregate.id, delta_value)

    result = _run_with_retry(
        unit,
        max_attempts=max_attempts,
        description=f"merge into {series.series_id}/{period_key}",
    )
    logger.debug(
        "Merged %.2f into %s/%s/%s -> %s",
        delta_value,
        series.series_id,
        period_key,
        dimension or "-",
        result.accumulated,
    )
    return float(result.accumulated or 0.0)


def set_target(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period_key: str,
    dimension: Optional[str],
    target: float,
) -> Aggregate:
    """
    Explicitly set the target of a (period, dimension) aggregate.

    When the aggregate does not exist yet it is created without any
    accumulated value, which the Goal Evaluator reports as pending.
    """
    require_strategy(series, "merge")
    validate_period_key(period_key, series.granularity)
    uniqueness_key(period_key, dimension)
    target_value = coerce_value(target, "target")

    with store.transaction():
        aggregate = store.get_aggregate(series.series_id, period_key, dimension)
        if aggregate is None:
            aggregate = store.insert_aggregate(
                series.series_id,
                period_key,
                dimension,
                target=target_value,
                accumulated=None,
            )
        else:
            aggregate = store.update_aggregate_target(aggregate.id, target_value)

    logger.info(
        "Target of %s/%s/%s set to %.2f",
        series.series_id,
        period_key,
        dimension or "-",
        target_value,
    )
    return aggregate
