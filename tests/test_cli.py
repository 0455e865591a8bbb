import pytest

from ledger_rollup import __version__
from ledger_rollup.cli import main
from ledger_rollup.logging_config import reset_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "ledger_rollup.toml"
    path.write_text(
        '[database]\npath = "cli.sqlite"\n\n[logging]\nlevel = "WARNING"\n',
        encoding="utf-8",
    )
    return str(path)


def run(config_path, *args):
    main(["--config", config_path, *args])


def test_version(capsys):
    main(["--version"])
    assert f"ledger_rollup version {__version__}" in capsys.readouterr().out


def test_entries_add_and_list(config_path, capsys):
    run(config_path, "entries", "add", "daily_collections", "--date", "2025-01-05", "--value", "100")
    run(config_path, "entries", "add", "daily_collections", "--date", "2025-01-10", "--value", "50")
    run(config_path, "entries", "add", "daily_collections", "--date", "2025-01-07", "--value", "20")
    out = capsys.readouterr().out
    assert "running_total=100.00" in out
    assert "running_total=150.00" in out

    run(config_path, "entries", "list", "daily_collections", "--period", "2025-01")
    out = capsys.readouterr().out
    assert "running_total" in out
    assert "Total entries: 3 | Total value: 170.00" in out


def test_entries_edit_and_delete(config_path, capsys):
    run(config_path, "entries", "add", "daily_collections", "--date", "2025-01-05", "--value", "100")
    run(config_path, "entries", "add", "daily_collections", "--date", "2025-01-10", "--value", "50")
    capsys.readouterr()

    run(config_path, "entries", "edit", "daily_collections", "2", "--date", "2025-02-01")
    out = capsys.readouterr().out
    assert "moved to period 2025-02" in out

    run(config_path, "entries", "delete", "daily_collections", "1")
    assert "Deleted entry #1" in capsys.readouterr().out

    run(config_path, "entries", "list", "daily_collections", "--period", "2025-01")
    assert "No entries found" in capsys.readouterr().out


def test_conflict_exits_with_error(config_path):
    run(config_path, "entries", "add", "inspections_clandestine", "--date", "2025-01-10", "--value", "5", "--dimension", "North")

    with pytest.raises(SystemExit) as exc_info:
        run(config_path, "entries", "add", "inspections_clandestine", "--date", "2025-01-20", "--value", "7", "--dimension", "North")

    assert "CONFLICT" in str(exc_info.value.code)


def test_unknown_series_exits_with_error(config_path):
    with pytest.raises(SystemExit) as exc_info:
        run(config_path, "audit", "no_such_series")

    assert "UNKNOWN_SERIES" in str(exc_info.value.code)


def test_invalid_date_exits_with_error(config_path):
    with pytest.raises(SystemExit) as exc_info:
        run(config_path, "entries", "add", "daily_collections", "--date", "05/01/2025", "--value", "1")

    assert "Invalid date format" in str(exc_info.value.code)


def test_merge_target_and_status(config_path, capsys):
    run(config_path, "merge", "debt_3_plus", "2025-01", "9800000", "--target", "9300000")
    run(config_path, "merge", "debt_3_plus", "2025-01", "-200000")
    run(config_path, "merge", "debt_3_plus", "2025-01", "-150000")
    assert "accumulated 9450000.00" in capsys.readouterr().out

    run(config_path, "status", "debt_3_plus", "2025-01")
    out = capsys.readouterr().out
    assert "Status:      not_met" in out

    run(config_path, "target", "debt_3_plus", "2025-01", "9500000")
    run(config_path, "status", "debt_3_plus")
    out = capsys.readouterr().out
    assert "target set to 9500000.00" in out
    assert "met" in out


def test_merge_without_target_fails(config_path):
    with pytest.raises(SystemExit) as exc_info:
        run(config_path, "merge", "district_progress", "2025-01", "10", "--dimension", "North")

    assert "VALIDATION_ERROR" in str(exc_info.value.code)


def test_recompute_and_audit(config_path, capsys):
    run(config_path, "entries", "add", "daily_collections", "--date", "2025-01-05", "--value", "100")
    capsys.readouterr()

    run(config_path, "audit", "daily_collections")
    assert "consistent" in capsys.readouterr().out

    run(config_path, "recompute", "daily_collections")
    out = capsys.readouterr().out
    assert "2025-01: 1 entries, 1 written, total 100.00" in out


def test_import_entries_and_contributions(config_path, tmp_path, capsys):
    entries_csv = tmp_path / "collections.csv"
    entries_csv.write_text("date,value\n2025-01-05,100\n2025-01-10,50\n", encoding="utf-8")
    contributions_csv = tmp_path / "districts.csv"
    contributions_csv.write_text(
        "month,district,recovered,monthlyGoal\n2025-01,North,120,100\n",
        encoding="utf-8",
    )

    run(config_path, "import", "daily_collections", str(entries_csv))
    assert "Imported 2/2 entries, 0 conflict(s) skipped." in capsys.readouterr().out

    run(config_path, "import", "district_progress", str(contributions_csv))
    assert "Merged 1 contribution(s) over 1 period(s)." in capsys.readouterr().out

    with pytest.raises(SystemExit):
        run(config_path, "import", "daily_collections", str(tmp_path / "missing.csv"))


def test_missing_config_file_exits(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main(["--config", str(tmp_path / "missing.toml"), "audit", "daily_collections"])

    assert "Configuration error" in str(exc_info.value.code)


def test_defaults_are_used_without_config_file(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)

    main(["entries", "add", "daily_collections", "--date", "2025-01-05", "--value", "1"])

    assert (tmp_path / "data" / "db" / "ledger_rollup.sqlite").exists()
    assert "Created entry #1" in capsys.readouterr().out
