# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Period helpers for Ledger Rollup.

A period is the calendar bucket that scopes a rollup. Each series declares a
granularity and every entry is filed under the period key derived from its
date:

- "day"      → ``YYYY-MM-DD``
- "iso_week" → ``YYYY-MM-DD`` of the Monday on or before the date
- "month"    → ``YYYY-MM``
- "year"     → ``YYYY``

This module also defines the Period value object (inclusive date bounds and
a human-readable label) and the uniqueness key used to reject duplicate
entries for series that declare one.
"""

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Literal, Optional

from .errors import ValidationError

Granularity = Literal["day", "iso_week", "month", "year"]

GRANULARITIES: tuple[str, ...] = ("day", "iso_week", "month", "year")

# ASCII unit separator: never produced by a period key and rejected in
# dimensions.
KEY_SEPARATOR = "\x1f"


@dataclass
class Period:
    """Represents a reporting period with a human-readable label."""

    start: date
    end: date
    label: str


def _as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def period_of(value: date, granularity: Granularity) -> str:
    """
    Return the key of the period enclosing ``value``.

    Examples
    --------
    >>> period_of(date(2025, 1, 7), "month")
    '2025-01'
    >>> period_of(date(2025, 1, 5), "iso_week")  # a Sunday
    '2024-12-30'
    """
    d = _as_date(value)
    if granularity == "month":
        return f"{d.year:04d}-{d.month:02d}"
    if granularity == "iso_week":
        monday = d - timedelta(days=d.weekday())
        return monday.isoformat()
    if granularity == "year":
        return f"{d.year:04d}"
    if granularity == "day":
        return d.isoformat()
    raise ValidationError(f"Unknown granularity: {granularity!r}")


def uniqueness_key(period_key: str, dimension: Optional[str]) -> str:
    """
    Build the key that a unique series must not repeat.

    A missing dimension is treated as the empty string, so a series without
    dimension allows a single entry per period.
    """
    dim = dimension or ""
    for part in (period_key, dim):
        if KEY_SEPARATOR in part:
            raise ValidationError(
                f"Invalid character in key component {part!r} "
                "(unit separator is reserved)."
            )
    return f"{period_key}{KEY_SEPARATOR}{dim}"


def validate_period_key(period_key: str, granularity: Granularity) -> str:
    """
    Check that a caller-supplied period key has the persisted shape.

    Returns the key unchanged so that the call can be used inline.

    Raises
    ------
    ValidationError
        If the key does not match the granularity (e.g. "2025-1" for a
        month, or a non-Monday date for an ISO week).
    """
    raw = str(period_key).strip()
    try:
        if granularity == "month":
            if len(raw) != 7:
                raise ValueError(raw)
            parsed = datetime.strptime(raw, "%Y-%m").date()
        elif granularity == "year":
            if len(raw) != 4 or not raw.isdigit():
                raise ValueError(raw)
            parsed = date(int(raw), 1, 1)
        elif granularity in ("day", "iso_week"):
            parsed = date.fromisoformat(raw)
        else:
            raise ValidationError(f"Unknown granularity: {granularity!r}")
    except ValueError as exc:
        raise ValidationError(
            f"Invalid period key {period_key!r} for granularity {granularity!r}."
        ) from exc

    if period_of(parsed, granularity) != raw:
        raise ValidationError(
            f"Period key {period_key!r} is not a valid {granularity} key "
            f"(expected {period_of(parsed, granularity)!r})."
        )
    return raw


def period_bounds(period_key: str, granularity: Granularity) -> Period:
    """Return the inclusive date range covered by a period key."""
    key = validate_period_key(period_key, granularity)

    if granularity == "month":
        year, month = (int(p) for p in key.split("-"))
        start = date(year, month, 1)
        end = date(year, month, monthrange(year, month)[1])
        return Period(start=start, end=end, label=f"Month {key}")

    if granularity == "year":
        year = int(key)
        return Period(start=date(year, 1, 1), end=date(year, 12, 31), label=f"Year {key}")

    start = date.fromisoformat(key)
    if granularity == "iso_week":
        end = start + timedelta(days=6)
        return Period(start=start, end=end, label=f"Week of {key}")

    return Period(start=start, end=start, label=f"Day {key}")
