# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Typed exceptions raised by Ledger Rollup.

Every exception carries a machine-readable ``code`` class attribute so that
callers (CLI, web handlers) can react by type or by code instead of parsing
messages.

Hierarchy
---------

    RollupError
    +-- ValidationError          missing or malformed input, no write done
    |   +-- UnknownSeriesError   series id not declared in the catalogue
    +-- NotFoundError            entry id does not exist
    +-- ConflictError            uniqueness violation on create / edit
    +-- StoreError               failure reported by the entry store
        +-- TransactionConflictError   store locked by a concurrent writer

``ValidationError``, ``NotFoundError`` and ``ConflictError`` are always raised
before anything is written. ``StoreError`` wraps the underlying ``sqlite3``
exception (available as ``__cause__``).
"""

from __future__ import annotations


class RollupError(Exception):
    """Base class for all Ledger Rollup errors."""

    code: str = "ROLLUP_ERROR"


class ValidationError(RollupError):
    """A required field is missing or malformed."""

    code: str = "VALIDATION_ERROR"


class UnknownSeriesError(ValidationError):
    """The requested series is not declared."""

    code: str = "UNKNOWN_SERIES"

    def __init__(self, series_id: str):
        self.series_id = series_id
        super().__init__(f"Unknown series: {series_id!r}")


class NotFoundError(RollupError):
    """An entry referenced by id does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entry_id: int):
        self.entry_id = entry_id
        super().__init__(f"Entry #{entry_id} not found.")


class ConflictError(RollupError):
    """An entry already exists for the same (series, period, dimension)."""

    code: str = "CONFLICT"

    def __init__(
        self,
        series_id: str,
        period: str,
        dimension: str | None,
        existing_id: int | None = None,
    ):
        self.series_id = series_id
        self.period = period
        self.dimension = dimension
        self.existing_id = existing_id
        label = f"{period}" if not dimension else f"{period} / {dimension}"
        super().__init__(
            f"An entry already exists in series {series_id!r} for {label}"
            + (f" (entry #{existing_id})." if existing_id is not None else ".")
        )


class StoreError(RollupError):
    """The entry store failed (I/O, locking, constraint)."""

    code: str = "STORE_ERROR"


class TransactionConflictError(StoreError):
    """The store was locked by a concurrent writer; the unit may be retried."""

    code: str = "TRANSACTION_CONFLICT"
