from datetime import date

import pandas as pd
import pytest

from ledger_rollup.db import DatabaseConfig, EntriesFilter, SQLiteEntryStore
from ledger_rollup.entries_service import create_entry
from ledger_rollup.errors import StoreError, ValidationError
from ledger_rollup.io import (
    import_contributions,
    import_entries,
    read_contributions_csv,
    read_entries_csv,
)
from ledger_rollup.reports import audit_running_totals
from ledger_rollup.series import DEFAULT_SERIES

COLLECTIONS = DEFAULT_SERIES["daily_collections"]
INSPECTIONS = DEFAULT_SERIES["inspections_clandestine"]
DISTRICTS = DEFAULT_SERIES["district_progress"]


def make_store(tmp_path) -> SQLiteEntryStore:
    store = SQLiteEntryStore(DatabaseConfig(engine="sqlite", path=tmp_path / "io.sqlite"))
    store.init_database()
    return store


def write_csv(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return path


def test_read_entries_csv_normalizes_columns(tmp_path):
    """Column names are case-insensitive and accept aliases."""
    path = write_csv(
        tmp_path,
        "entries.csv",
        "Date,Amount,District\n2025-01-05,100,North\n2025-01-10,50.5,\n",
    )

    df = read_entries_csv(path)

    assert list(df.columns) == ["date", "value", "dimension"]
    assert list(df["date"]) == [date(2025, 1, 5), date(2025, 1, 10)]
    assert list(df["value"]) == [100.0, 50.5]
    assert list(df["dimension"]) == ["North", ""]


def test_read_entries_csv_without_dimension(tmp_path):
    path = write_csv(tmp_path, "entries.csv", "date,value\n2025-01-05,1\n")

    df = read_entries_csv(path)
    assert list(df["dimension"]) == [""]


@pytest.mark.parametrize(
    "content",
    [
        "date,code\n2025-01-05,701\n",
        "date,value\nnot-a-date,1\n",
        "date,value\n2025-01-05,abc\n",
        "date,value\n2025-01-05,inf\n",
    ],
)
def test_read_entries_csv_invalid_content(tmp_path, content):
    path = write_csv(tmp_path, "bad.csv", content)

    with pytest.raises(ValueError):
        read_entries_csv(path)


def test_read_contributions_csv_accepts_dashboard_export(tmp_path):
    path = write_csv(
        tmp_path,
        "districts.csv",
        "month,district,recovered,monthlyGoal\n"
        "2025-01,North,120,100\n"
        "2025-01,North,30,\n"
        "2025-01,South,40,100\n",
    )

    df = read_contributions_csv(path)

    assert list(df.columns) == ["period", "dimension", "delta", "target"]
    assert list(df["period"]) == ["2025-01", "2025-01", "2025-01"]
    assert list(df["delta"]) == [120.0, 30.0, 40.0]
    assert df["target"].isna().tolist() == [False, True, False]


def test_read_contributions_csv_invalid_content(tmp_path):
    missing = write_csv(tmp_path, "missing.csv", "period,dimension\n2025-01,North\n")
    with pytest.raises(ValueError):
        read_contributions_csv(missing)

    bad_target = write_csv(
        tmp_path, "target.csv", "period,delta,target\n2025-01,1,lots\n"
    )
    with pytest.raises(ValueError):
        read_contributions_csv(bad_target)


def test_import_entries_rolls_up_each_period(tmp_path):
    store = make_store(tmp_path)
    path = write_csv(
        tmp_path,
        "collections.csv",
        "date,value\n2025-01-10,50\n2025-02-01,7\n2025-01-05,100\n",
    )

    stats = import_entries(store, COLLECTIONS, read_entries_csv(path))

    assert stats.rows == 3
    assert stats.imported == 3
    assert stats.conflicts == 0
    assert stats.periods == ["2025-01", "2025-02"]

    january = store.query(COLLECTIONS.series_id, EntriesFilter(period="2025-01"))
    assert [e.running_total for e in january] == [100, 150]
    assert audit_running_totals(store, COLLECTIONS).empty


def test_import_entries_skips_conflicting_rows(tmp_path):
    store = make_store(tmp_path)
    path = write_csv(
        tmp_path,
        "inspections.csv",
        "date,value,dimension\n"
        "2025-01-10,5,North\n"
        "2025-01-20,7,North\n"
        "2025-01-20,2,South\n",
    )

    stats = import_entries(store, INSPECTIONS, read_entries_csv(path))

    assert stats.imported == 2
    assert stats.conflicts == 1
    assert len(store.query(INSPECTIONS.series_id)) == 2


def test_import_entries_rejects_merge_series(tmp_path):
    store = make_store(tmp_path)
    path = write_csv(tmp_path, "e.csv", "date,value\n2025-01-10,5\n")

    with pytest.raises(ValidationError):
        import_entries(store, DISTRICTS, read_entries_csv(path))


def test_import_contributions_merges_rows_in_order(tmp_path):
    store = make_store(tmp_path)
    path = write_csv(
        tmp_path,
        "districts.csv",
        "period,dimension,delta,target\n"
        "2025-01,North,120,100\n"
        "2025-01,North,30,\n"
        "2025-01,South,40,100\n",
    )

    stats = import_contributions(store, DISTRICTS, read_contributions_csv(path))

    assert stats.imported == 3
    assert stats.periods == ["2025-01"]
    assert store.get_aggregate(DISTRICTS.series_id, "2025-01", "North").accumulated == 150
    assert store.get_aggregate(DISTRICTS.series_id, "2025-01", "South").accumulated == 40


def test_import_contributions_requires_target_for_new_keys(tmp_path):
    store = make_store(tmp_path)
    path = write_csv(
        tmp_path,
        "districts.csv",
        "period,dimension,delta\n2025-01,North,120\n",
    )

    with pytest.raises(ValidationError, match="Row 1"):
        import_contributions(store, DISTRICTS, read_contributions_csv(path))

    assert store.get_aggregate(DISTRICTS.series_id, "2025-01", "North") is None


def test_import_entries_validates_every_row_before_writing(tmp_path):
    """An invalid row anywhere in the file leaves the series untouched."""
    store = make_store(tmp_path)
    create_entry(store, COLLECTIONS, date(2025, 1, 20), 10)
    df = pd.DataFrame(
        {
            "date": [date(2025, 1, 5), date(2025, 1, 6)],
            "value": [100.0, float("inf")],
            "dimension": ["", ""],
        }
    )

    with pytest.raises(ValidationError, match="Row 2"):
        import_entries(store, COLLECTIONS, df)

    entries = store.query(COLLECTIONS.series_id)
    assert [(e.date, e.running_total) for e in entries] == [(date(2025, 1, 20), 10)]
    assert audit_running_totals(store, COLLECTIONS).empty


def test_import_entries_rejects_reserved_character_in_dimension(tmp_path):
    store = make_store(tmp_path)
    df = pd.DataFrame(
        {
            "date": [date(2025, 1, 5), date(2025, 1, 6)],
            "value": [1.0, 2.0],
            "dimension": ["North", "So\x1futh"],
        }
    )

    with pytest.raises(ValidationError):
        import_entries(store, COLLECTIONS, df)

    assert store.query(COLLECTIONS.series_id) == []


def test_import_entries_rolls_up_written_rows_when_store_fails(tmp_path, monkeypatch):
    """Rows committed before a store failure still get consistent totals."""
    store = make_store(tmp_path)
    create_entry(store, COLLECTIONS, date(2025, 1, 20), 10)
    path = write_csv(
        tmp_path,
        "collections.csv",
        "date,value\n2025-01-05,100\n2025-01-06,20\n",
    )

    original = store.create
    calls = {"n": 0}

    def failing_create(series_id, new_entry):
        calls["n"] += 1
        if calls["n"] == 2:
            raise StoreError("Disk I/O error.")
        return original(series_id, new_entry)

    monkeypatch.setattr(store, "create", failing_create)

    with pytest.raises(StoreError):
        import_entries(store, COLLECTIONS, read_entries_csv(path))

    january = store.query(COLLECTIONS.series_id, EntriesFilter(period="2025-01"))
    assert [e.running_total for e in january] == [100, 110]
    assert audit_running_totals(store, COLLECTIONS).empty
