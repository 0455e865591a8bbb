# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Series declarations for Ledger Rollup.

A series is one logical ledger (daily collections, district progress, debt
follow-up, ...). Its declaration decides how entries are rolled up:

- strategy:
    * "prefix_sum": every entry carries the running total of its period,
      recomputed in full after each create / update / delete.
    * "merge": one accumulator per (period, dimension), increased by each
      contribution.
    * "none": raw entries only (still subject to the uniqueness guard).
- granularity: day, iso_week, month or year (see periods.py).
- kind: amount, count or percentage (informational, used by summaries).
- unique: whether (period, dimension) may appear only once.
- direction: how the Goal Evaluator compares accumulated value and target.

The built-in catalogue mirrors the ledgers of the water utility dashboard
this engine was written for. Extra series can be declared in the TOML
configuration (see config.py).
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from .errors import UnknownSeriesError, ValidationError
from .periods import GRANULARITIES, Granularity

Strategy = Literal["prefix_sum", "merge", "none"]
SeriesKind = Literal["amount", "count", "percentage"]
GoalDirection = Literal["higher_is_better", "lower_is_better"]

STRATEGIES: tuple[str, ...] = ("prefix_sum", "merge", "none")
KINDS: tuple[str, ...] = ("amount", "count", "percentage")
DIRECTIONS: tuple[str, ...] = ("higher_is_better", "lower_is_better")


@dataclass(frozen=True)
class SeriesDefinition:
    """Declared behaviour of one logical series."""

    series_id: str
    strategy: Strategy
    granularity: Granularity
    kind: SeriesKind = "amount"
    unique: bool = False
    direction: GoalDirection = "higher_is_better"
    label: str = ""

    @property
    def is_prefix_sum(self) -> bool:
        return self.strategy == "prefix_sum"

    @property
    def is_merge(self) -> bool:
        return self.strategy == "merge"


DEFAULT_SERIES: dict[str, SeriesDefinition] = {
    s.series_id: s
    for s in (
        SeriesDefinition(
            series_id="daily_collections",
            strategy="prefix_sum",
            granularity="month",
            label="Daily collections",
        ),
        SeriesDefinition(
            series_id="district_progress",
            strategy="merge",
            granularity="month",
            label="Recovered amount per district",
        ),
        SeriesDefinition(
            series_id="collection_goals",
            strategy="merge",
            granularity="month",
            label="Monthly collection goal",
        ),
        SeriesDefinition(
            series_id="debt_3_plus",
            strategy="merge",
            granularity="month",
            direction="lower_is_better",
            label="Debt of 3+ months",
        ),
        SeriesDefinition(
            series_id="annual_collection_goals",
            strategy="merge",
            granularity="year",
            label="Annual collection goal",
        ),
        SeriesDefinition(
            series_id="inspections_clandestine",
            strategy="none",
            granularity="month",
            kind="count",
            unique=True,
            label="Inspections and clandestine connections per district",
        ),
        SeriesDefinition(
            series_id="recovered_services",
            strategy="none",
            granularity="day",
            kind="count",
            unique=True,
            label="Recovered services per district",
        ),
        SeriesDefinition(
            series_id="weekly_meter_progress",
            strategy="none",
            granularity="iso_week",
            kind="count",
            unique=True,
            label="Meters installed per week",
        ),
        SeriesDefinition(
            series_id="closed_contracts",
            strategy="none",
            granularity="month",
            kind="count",
            unique=True,
            label="Closed contracts per district",
        ),
        SeriesDefinition(
            series_id="meter_data",
            strategy="none",
            granularity="month",
            kind="count",
            unique=True,
            label="Installed meters per month",
        ),
        # Dimension: "<operation type>/<entity>".
        SeriesDefinition(
            series_id="service_operations",
            strategy="none",
            granularity="month",
            kind="count",
            unique=True,
            label="Service operations per type and entity",
        ),
    )
}


def _choice(raw: Any, allowed: tuple[str, ...], field: str, series_id: str) -> str:
    value = str(raw)
    if value not in allowed:
        raise ValueError(
            f"Invalid {field} {value!r} for series {series_id!r}. "
            f"Expected one of: {', '.join(allowed)}."
        )
    return value


def series_from_mapping(series_id: str, data: Mapping[str, Any]) -> SeriesDefinition:
    """
    Build a SeriesDefinition from a raw TOML table.

    Raises:
        ValueError: if the strategy, granularity, kind or direction is invalid.
    """
    if "strategy" not in data or "granularity" not in data:
        raise ValueError(
            f"Series {series_id!r} must define both 'strategy' and 'granularity'."
        )

    return SeriesDefinition(
        series_id=series_id,
        strategy=_choice(data["strategy"], STRATEGIES, "strategy", series_id),  # type: ignore[arg-type]
        granularity=_choice(  # type: ignore[arg-type]
            data["granularity"], GRANULARITIES, "granularity", series_id
        ),
        kind=_choice(data.get("kind", "amount"), KINDS, "kind", series_id),  # type: ignore[arg-type]
        unique=bool(data.get("unique", False)),
        direction=_choice(  # type: ignore[arg-type]
            data.get("direction", "higher_is_better"), DIRECTIONS, "direction", series_id
        ),
        label=str(data.get("label", "")),
    )


def get_series(catalogue: Mapping[str, SeriesDefinition], series_id: str) -> SeriesDefinition:
    """Return the declared series or raise UnknownSeriesError."""
    try:
        return catalogue[series_id]
    except KeyError as exc:
        raise UnknownSeriesError(series_id) from exc


def require_strategy(series: SeriesDefinition, *allowed: str) -> None:
    """Raise ValidationError if the series does not use one of ``allowed``."""
    if series.strategy not in allowed:
        raise ValidationError(
            f"Series {series.series_id!r} uses the {series.strategy!r} strategy; "
            f"this operation requires {' or '.join(repr(a) for a in allowed)}."
        )
