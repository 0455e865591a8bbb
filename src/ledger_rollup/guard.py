# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Uniqueness guard.

Series declared with ``unique = true`` accept at most one entry per
(period, dimension). The guard is consulted before a create (and before an
edit that changes the period or the dimension of an entry). It does not write
anything: callers run it inside the same store transaction as the write that
follows, which serializes concurrent creators on SQLite.
"""

from typing import Optional

from .db import EntriesFilter, SQLiteEntryStore
from .errors import ConflictError
from .periods import uniqueness_key
from .series import SeriesDefinition


def check_create(
    store: SQLiteEntryStore,
    series: SeriesDefinition,
    period_key: str,
    dimension: Optional[str],
    *,
    exclude_id: Optional[int] = None,
) -> None:
    """
    Reject a write that would repeat the (period, dimension) key of a series.

    Parameters
    ----------
    store:
        Entry store to query.
    series:
        Series the entry belongs to. Series without a uniqueness constraint
        always pass.
    period_key, dimension:
        Key of the entry about to be written.
    exclude_id:
        Entry allowed to hold the key already (the entry being edited).

    Raises
    ------
    ConflictError
        If another entry already uses the key.
    ValidationError
        If a key component contains the reserved separator.
    """
    # Validates the components even for non-unique series.
    uniqueness_key(period_key, dimension)

    if not series.unique:
        return

    existing = store.query(
        series.series_id,
        EntriesFilter(period=period_key, dimension=dimension or ""),
        order_by=("id", "ASC"),
    )
    for entry in existing:
        if entry.id != exclude_id:
            raise ConflictError(series.series_id, period_key, dimension, entry.id)
