import sqlite3
from datetime import date

import pytest

from ledger_rollup.db import DatabaseConfig, NewEntry, SQLiteEntryStore
from ledger_rollup.engine import merge_contribution, recompute_series, set_target
from ledger_rollup.entries_service import create_entry
from ledger_rollup.errors import ValidationError
from ledger_rollup.reports import (
    AUDIT_COLUMNS,
    ENTRY_COLUMNS,
    audit_running_totals,
    entries_frame,
    find_uniqueness_violations,
    goal_summary,
)
from ledger_rollup.series import DEFAULT_SERIES

COLLECTIONS = DEFAULT_SERIES["daily_collections"]
INSPECTIONS = DEFAULT_SERIES["inspections_clandestine"]


def make_store(tmp_path) -> SQLiteEntryStore:
    store = SQLiteEntryStore(DatabaseConfig(engine="sqlite", path=tmp_path / "reports.sqlite"))
    store.init_database()
    return store


def test_entries_frame(tmp_path):
    store = make_store(tmp_path)

    empty = entries_frame(store, COLLECTIONS)
    assert empty.empty
    assert list(empty.columns) == ENTRY_COLUMNS

    create_entry(store, COLLECTIONS, date(2025, 1, 10), 50, "North")
    create_entry(store, COLLECTIONS, date(2025, 1, 5), 100)
    create_entry(store, COLLECTIONS, date(2025, 2, 1), 7)

    df = entries_frame(store, COLLECTIONS)
    assert list(df.columns) == ENTRY_COLUMNS
    assert list(df["value"]) == [100, 50, 7]
    assert list(df["dimension"]) == ["", "North", ""]
    assert list(df["running_total"]) == [100, 150, 7]

    assert len(entries_frame(store, COLLECTIONS, "2025-02")) == 1


def test_audit_running_totals_consistent_series(tmp_path):
    store = make_store(tmp_path)

    assert audit_running_totals(store, COLLECTIONS).empty

    create_entry(store, COLLECTIONS, date(2025, 1, 5), 100)
    create_entry(store, COLLECTIONS, date(2025, 1, 10), 50)
    create_entry(store, COLLECTIONS, date(2025, 2, 1), 7)

    assert audit_running_totals(store, COLLECTIONS).empty


def test_audit_running_totals_detects_drift(tmp_path):
    """A running total changed behind the engine's back is reported."""
    store = make_store(tmp_path)
    create_entry(store, COLLECTIONS, date(2025, 1, 5), 100)
    second = create_entry(store, COLLECTIONS, date(2025, 1, 10), 50)

    conn = sqlite3.connect(store.cfg.path)
    try:
        with conn:
            conn.execute(
                "UPDATE entries SET running_total_cents = ? WHERE id = ?;",
                (99900, second.id),
            )
    finally:
        conn.close()

    stale = audit_running_totals(store, COLLECTIONS)
    assert list(stale.columns) == AUDIT_COLUMNS
    assert len(stale) == 1
    row = stale.iloc[0]
    assert row["id"] == second.id
    assert row["running_total"] == pytest.approx(999.0)
    assert row["expected_running_total"] == pytest.approx(150.0)

    recompute_series(store, COLLECTIONS)
    assert audit_running_totals(store, COLLECTIONS).empty


def test_audit_requires_prefix_sum_series(tmp_path):
    store = make_store(tmp_path)

    with pytest.raises(ValidationError):
        audit_running_totals(store, INSPECTIONS)


def test_find_uniqueness_violations(tmp_path):
    """Rows written around the guard (legacy data) are detected."""
    store = make_store(tmp_path)

    assert find_uniqueness_violations(store, INSPECTIONS).empty

    first = create_entry(store, INSPECTIONS, date(2025, 1, 10), 5, "North")
    create_entry(store, INSPECTIONS, date(2025, 1, 10), 2, "South")
    # Direct store write bypasses the uniqueness guard.
    duplicate = store.create(
        INSPECTIONS.series_id,
        NewEntry(date=date(2025, 1, 25), period="2025-01", value=6, dimension="North"),
    )

    violations = find_uniqueness_violations(store, INSPECTIONS)
    assert len(violations) == 1
    row = violations.iloc[0]
    assert row["period"] == "2025-01"
    assert row["dimension"] == "North"
    assert row["entries_count"] == 2
    assert row["entry_ids"] == [first.id, duplicate.id]


def test_goal_summary(tmp_path):
    store = make_store(tmp_path)
    debt = DEFAULT_SERIES["debt_3_plus"]

    assert goal_summary(store, debt).empty

    merge_contribution(store, debt, "2025-01", None, 9800000, target=9300000)
    merge_contribution(store, debt, "2025-01", None, -600000)
    merge_contribution(store, debt, "2025-02", None, 9400000, target=9000000)
    set_target(store, debt, "2025-03", None, 8800000)

    summary = goal_summary(store, debt)
    assert list(summary["period"]) == ["2025-01", "2025-02", "2025-03"]
    assert list(summary["status"]) == ["met", "not_met", "pending"]
    assert summary.loc[0, "accumulated"] == 9200000

    only_feb = goal_summary(store, debt, "2025-02")
    assert len(only_feb) == 1

    with pytest.raises(ValidationError):
        goal_summary(store, COLLECTIONS)
