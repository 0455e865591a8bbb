# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Ledger Rollup
-------------

Keeps derived period aggregates of monthly ledgers consistent with their
source entries. Every time a dated numeric entry is created, edited or
deleted, the values derived from it are brought up to date:

- prefix-sum series: each entry of a period carries the running total of the
  period up to its date, fully recomputed after any mutation,
- merge series: one accumulator per (period, dimension) increased by each
  contribution, compared with its target by the goal evaluator.

Main capabilities:
- SQLite entry store with atomic batches and explicit transactions,
- period key derivation (day, ISO week, month, year),
- uniqueness guard for series that allow one entry per period and dimension,
- goal status classification (no data, pending, met, not met),
- reconciliation tables (stale running totals, repeated keys) with pandas,
- CSV import of entries and contributions,
- a command-line interface.


Version: 0.1.0

Usage:
    ledger-rollup --help
    python -m ledger_rollup.cli --help
"""

__all__ = ["engine", "entries_service", "goals", "reports", "io"]

__version__ = "0.1.0"
