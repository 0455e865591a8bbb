# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for Ledger Rollup.

This module wires together the main building blocks of Ledger Rollup:

- application configuration (database, rollup options, series catalogue),
- the SQLite entry store,
- the entry services and the rollup engine,
- goal evaluation, reconciliation tables and CSV import.

The CLI is intentionally thin: it does not implement any rollup logic
itself. It parses arguments, calls the library and prints plain pandas
tables.


Configuration
-------------

By default, the CLI reads ``ledger_rollup.toml`` in the current working
directory. If that file does not exist, built-in defaults are used (database
under ``data/db/``, built-in series only). You can point to another file
with:

    --config PATH


Commands
--------

entries add SERIES --date YYYY-MM-DD --value N [--dimension D]
    Create an entry; prefix-sum series get their period recomputed.

entries edit SERIES ID [--date D] [--value N] [--dimension D]
    Edit an entry. A date in another period moves the entry (new id) and
    recomputes both periods.

entries delete SERIES ID
    Delete an entry and recompute its period.

entries list SERIES [--period P] [--dimension D]
    Print the entries of a series, with their running totals.

merge SERIES PERIOD DELTA [--dimension D] [--target T]
    Merge a contribution into a (period, dimension) aggregate. The first
    contribution of a key requires --target.

target SERIES PERIOD TARGET [--dimension D]
    Set the target of an aggregate explicitly.

recompute SERIES [--period P]
    Recompute the running totals of one period, or of the whole series.

status SERIES [PERIOD] [--dimension D] [--target T]
    Goal status of one period, or the goal summary of a merge series.

audit SERIES
    Report stored running totals that disagree with their prefix sum, and
    keys repeated in a unique series.

import SERIES CSV_PATH
    Import entries (prefix-sum / plain series) or contributions (merge
    series) from a CSV file.


Errors
------

Library errors (validation, conflicts, missing entries, store failures) are
reported on stderr and the process exits with status 1.


Examples
--------

    ledger-rollup entries add daily_collections --date 2025-01-05 --value 100
    ledger-rollup merge debt_3_plus 2025-01 9800000 --target 9300000
    ledger-rollup status debt_3_plus 2025-01
    ledger-rollup audit daily_collections
"""

import argparse
import logging
from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Optional

from . import __version__
from .config import DEFAULT_CONFIG_FILE, AppConfig, default_app_config, load_app_config
from .db import SQLiteEntryStore
from .engine import merge_contribution, recompute_period, recompute_series, set_target
from .entries_service import create_entry, delete_entry, update_entry
from .errors import RollupError
from .goals import evaluate_period
from .io import (
    import_contributions,
    import_entries,
    read_contributions_csv,
    read_entries_csv,
)
from .logging_config import configure_logging
from .reports import (
    audit_running_totals,
    entries_frame,
    find_uniqueness_violations,
    goal_summary,
)
from .series import SeriesDefinition, get_series

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="ledger-rollup",
        description=(
            "Ledger Rollup - Derived period aggregates for monthly ledgers. "
            "Records dated entries and merge contributions, and keeps running "
            "totals and period accumulators consistent with them."
        ),
    )

    # Generic options
    ap.add_argument(
        "--version",
        action="store_true",
        help="Show the installed version of ledger_rollup and exit.",
    )

    ap.add_argument(
        "--config",
        dest="config_path",
        help=(
            "Path to the TOML configuration file. "
            f"If omitted, '{DEFAULT_CONFIG_FILE}' in the current directory is "
            "used when it exists, built-in defaults otherwise."
        ),
    )

    subparsers = ap.add_subparsers(dest="command", metavar="command")

    # ------------------------------------------------------------------
    # entries
    # ------------------------------------------------------------------
    entries_parser = subparsers.add_parser(
        "entries",
        help="Create, edit, delete and list dated entries.",
    )
    entries_subparsers = entries_parser.add_subparsers(
        dest="entries_command",
        metavar="entries-command",
    )

    entries_add = entries_subparsers.add_parser("add", help="Create an entry.")
    entries_add.add_argument("series", help="Series identifier.")
    entries_add.add_argument("--date", required=True, help="Entry date (YYYY-MM-DD).")
    entries_add.add_argument("--value", required=True, type=float, help="Signed value.")
    entries_add.add_argument("--dimension", help="Optional secondary key (e.g. district).")

    entries_edit = entries_subparsers.add_parser("edit", help="Edit an entry.")
    entries_edit.add_argument("series", help="Series identifier.")
    entries_edit.add_argument("entry_id", type=int, help="Entry id.")
    entries_edit.add_argument("--date", help="New date (YYYY-MM-DD).")
    entries_edit.add_argument("--value", type=float, help="New value.")
    entries_edit.add_argument(
        "--dimension",
        help="New dimension (pass an empty string to clear it).",
    )

    entries_delete = entries_subparsers.add_parser("delete", help="Delete an entry.")
    entries_delete.add_argument("series", help="Series identifier.")
    entries_delete.add_argument("entry_id", type=int, help="Entry id.")

    entries_list = entries_subparsers.add_parser("list", help="List entries.")
    entries_list.add_argument("series", help="Series identifier.")
    entries_list.add_argument("--period", help="Only this period key.")
    entries_list.add_argument("--dimension", help="Only this dimension.")

    # ------------------------------------------------------------------
    # merge / target
    # ------------------------------------------------------------------
    merge_parser = subparsers.add_parser(
        "merge",
        help="Merge a contribution into a period aggregate.",
    )
    merge_parser.add_argument("series", help="Series identifier (merge strategy).")
    merge_parser.add_argument("period", help="Period key (e.g. 2025-01).")
    merge_parser.add_argument("delta", type=float, help="Signed contribution.")
    merge_parser.add_argument("--dimension", help="Optional secondary key.")
    merge_parser.add_argument(
        "--target",
        type=float,
        help="Target of the period, required for the first contribution.",
    )

    target_parser = subparsers.add_parser("target", help="Set the target of an aggregate.")
    target_parser.add_argument("series", help="Series identifier (merge strategy).")
    target_parser.add_argument("period", help="Period key.")
    target_parser.add_argument("target", type=float, help="New target.")
    target_parser.add_argument("--dimension", help="Optional secondary key.")

    # ------------------------------------------------------------------
    # recompute / status / audit / import
    # ------------------------------------------------------------------
    recompute_parser = subparsers.add_parser(
        "recompute",
        help="Recompute running totals of a prefix-sum series.",
    )
    recompute_parser.add_argument("series", help="Series identifier.")
    recompute_parser.add_argument(
        "--period",
        help="Only this period key. If omitted, every period is recomputed.",
    )

    status_parser = subparsers.add_parser("status", help="Show goal status.")
    status_parser.add_argument("series", help="Series identifier.")
    status_parser.add_argument(
        "period",
        nargs="?",
        help="Period key. If omitted (merge series), all aggregates are listed.",
    )
    status_parser.add_argument("--dimension", help="Optional secondary key.")
    status_parser.add_argument(
        "--target",
        type=float,
        help="Target to compare with (required for prefix-sum series).",
    )

    audit_parser = subparsers.add_parser(
        "audit",
        help="Check stored running totals and uniqueness.",
    )
    audit_parser.add_argument("series", help="Series identifier.")

    import_parser = subparsers.add_parser("import", help="Import a CSV file.")
    import_parser.add_argument("series", help="Series identifier.")
    import_parser.add_argument("csv_path", metavar="CSV_PATH", help="CSV file to import.")

    return ap


def _parse_date(value: Optional[str]) -> Optional[date]:
    """
    Parse an optional CLI date argument (YYYY-MM-DD).

    Raises
    ------
    SystemExit
        If the date format is invalid.
    """
    if value is None:
        return None

    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        msg = f"Invalid date format: {value!r}. Expected YYYY-MM-DD."
        raise SystemExit(msg) from exc


def _load_config(config_path: Optional[str]) -> AppConfig:
    """Load the TOML configuration, or the built-in defaults if none exists."""
    if config_path:
        return load_app_config(config_path)
    if Path(DEFAULT_CONFIG_FILE).is_file():
        return load_app_config()
    return default_app_config()


def _print_frame(df, empty_message: str) -> None:
    if df.empty:
        print(empty_message)
        return
    print(df.to_string(index=False))


def _format_entry(entry) -> str:
    running = "-" if entry.running_total is None else f"{entry.running_total:.2f}"
    return (
        f"#{entry.id} {entry.date.isoformat()} period={entry.period} "
        f"dimension={entry.dimension or '-'} value={entry.value:.2f} "
        f"running_total={running}"
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_entries_add(args, store, series, config) -> None:
    entry = create_entry(
        store,
        series,
        _parse_date(args.date),
        args.value,
        args.dimension,
        options=config.rollup,
    )
    print(f"Created entry {_format_entry(entry)}")


def _handle_entries_edit(args, store, series, config) -> None:
    entry = update_entry(
        store,
        series,
        args.entry_id,
        entry_date=_parse_date(args.date),
        value=args.value,
        dimension=args.dimension,
        options=config.rollup,
    )
    if entry.id != args.entry_id:
        print(f"Entry #{args.entry_id} moved to period {entry.period} as #{entry.id}.")
    print(f"Updated entry {_format_entry(entry)}")


def _handle_entries_delete(args, store, series, config) -> None:
    entry = delete_entry(store, series, args.entry_id, options=config.rollup)
    print(f"Deleted entry #{entry.id} ({entry.date.isoformat()}, {entry.value:.2f}).")


def _handle_entries_list(args, store, series, config) -> None:
    df = entries_frame(store, series, args.period)
    if args.dimension is not None:
        df = df[df["dimension"] == args.dimension]

    if df.empty:
        print("No entries found for the given criteria.")
        return

    df_display = df.copy()
    df_display["date"] = df_display["date"].astype(str)
    print(df_display.to_string(index=False))
    print()
    print(f"Total entries: {len(df)} | Total value: {float(df['value'].sum()):.2f}")


def _handle_entries_command(args, store, series, config) -> None:
    """Dispatch function for the 'entries' subcommands."""
    subcmd = getattr(args, "entries_command", None)

    if subcmd == "add":
        _handle_entries_add(args, store, series, config)
    elif subcmd == "edit":
        _handle_entries_edit(args, store, series, config)
    elif subcmd == "delete":
        _handle_entries_delete(args, store, series, config)
    elif subcmd == "list":
        _handle_entries_list(args, store, series, config)
    else:
        print(
            "No entries subcommand specified. "
            "Available subcommands are: 'add', 'edit', 'delete', 'list'."
        )


def _handle_merge(args, store, series, config) -> None:
    accumulated = merge_contribution(
        store,
        series,
        args.period,
        args.dimension,
        args.delta,
        target=args.target,
        max_attempts=config.rollup.max_attempts,
    )
    label = args.period if not args.dimension else f"{args.period} / {args.dimension}"
    print(f"{series.series_id} {label}: accumulated {accumulated:.2f}")


def _handle_target(args, store, series, config) -> None:
    aggregate = set_target(store, series, args.period, args.dimension, args.target)
    print(
        f"{series.series_id} {aggregate.period}: target set to {aggregate.target:.2f}"
    )


def _handle_recompute(args, store, series, config) -> None:
    if args.period:
        results = [
            recompute_period(
                store,
                series,
                args.period,
                skip_unchanged=config.rollup.skip_unchanged,
                max_attempts=config.rollup.max_attempts,
            )
        ]
    else:
        results = recompute_series(
            store,
            series,
            skip_unchanged=config.rollup.skip_unchanged,
            max_attempts=config.rollup.max_attempts,
        )

    if not results:
        print(f"No entries to recompute in {series.series_id}.")
        return

    for result in results:
        print(
            f"{result.period}: {result.entries_count} entries, "
            f"{result.updated_count} written, total {result.period_total:.2f}"
        )


def _handle_status(args, store, series, config) -> None:
    if args.period is None:
        if not series.is_merge:
            raise SystemExit("A period is required for series without aggregates.")
        _print_frame(
            goal_summary(store, series),
            f"No aggregates recorded for {series.series_id}.",
        )
        return

    evaluation = evaluate_period(
        store,
        series,
        args.period,
        dimension=args.dimension,
        target=args.target,
    )
    accumulated = "-" if evaluation.accumulated is None else f"{evaluation.accumulated:.2f}"
    target = "-" if evaluation.target is None else f"{evaluation.target:.2f}"
    progress = (
        "-" if evaluation.progress_pct is None else f"{evaluation.progress_pct:.1f}%"
    )
    print(f"Series:      {series.series_id}")
    print(f"Period:      {evaluation.period}")
    if evaluation.dimension:
        print(f"Dimension:   {evaluation.dimension}")
    print(f"Accumulated: {accumulated}")
    print(f"Target:      {target}")
    print(f"Progress:    {progress}")
    print(f"Status:      {evaluation.status.value}")


def _handle_audit(args, store, series, config) -> None:
    if series.is_prefix_sum:
        stale = audit_running_totals(store, series)
        if stale.empty:
            print(f"Running totals of {series.series_id} are consistent.")
        else:
            print(f"Entries with a stale running total: {len(stale)}")
            stale = stale.copy()
            stale["date"] = stale["date"].astype(str)
            print(stale.to_string(index=False))
            print()
            print(f"Run 'ledger-rollup recompute {series.series_id}' to repair them.")

    if series.unique:
        violations = find_uniqueness_violations(store, series)
        if violations.empty:
            print(f"No repeated (period, dimension) key in {series.series_id}.")
        else:
            print(f"Repeated (period, dimension) keys: {len(violations)}")
            print(violations.to_string(index=False))

    if not series.is_prefix_sum and not series.unique:
        print(f"Nothing to audit for {series.series_id} ({series.strategy} strategy).")


def _handle_import(args, store, series, config) -> None:
    csv_path = Path(args.csv_path)
    if not csv_path.is_file():
        raise SystemExit(f"CSV file not found: {csv_path}")

    print(f"Importing {csv_path} into {series.series_id}...")
    if series.is_merge:
        stats = import_contributions(
            store, series, read_contributions_csv(csv_path), options=config.rollup
        )
        print(
            f"Merged {stats.imported} contribution(s) over "
            f"{len(stats.periods)} period(s)."
        )
    else:
        stats = import_entries(store, series, read_entries_csv(csv_path), options=config.rollup)
        print(
            f"Imported {stats.imported}/{stats.rows} entries, "
            f"{stats.conflicts} conflict(s) skipped."
        )


_HANDLERS = {
    "entries": _handle_entries_command,
    "merge": _handle_merge,
    "target": _handle_target,
    "recompute": _handle_recompute,
    "status": _handle_status,
    "audit": _handle_audit,
    "import": _handle_import,
}


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point for the Ledger Rollup CLI.

    This function parses command-line arguments, loads the configuration,
    configures logging, initializes the database and dispatches to the
    selected command. Library errors are turned into a SystemExit carrying
    the error message (exit status 1).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # --version: short-circuit and exit early.
    if args.version:
        print(f"ledger_rollup version {__version__}")
        return

    if args.command is None:
        parser.print_help()
        return

    if args.command == "entries" and args.entries_command is None:
        _handle_entries_command(args, None, None, None)
        return

    # 1) Load configuration
    try:
        config = _load_config(args.config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    configure_logging(config.log_level)

    # 2) Initialize the database (create file and schema if needed)
    store = SQLiteEntryStore(config.database)

    # 3) Dispatch
    try:
        store.init_database()
        series: SeriesDefinition = get_series(config.series, args.series)
        _HANDLERS[args.command](args, store, series, config)
    except RollupError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        raise SystemExit(f"Error [{exc.code}]: {exc}") from exc
    except ValueError as exc:
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    main()
