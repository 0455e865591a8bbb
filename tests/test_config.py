from pathlib import Path

import pytest

from ledger_rollup.config import default_app_config, load_app_config
from ledger_rollup.series import DEFAULT_SERIES


def write_config(tmp_path, content: str) -> Path:
    path = tmp_path / "ledger_rollup.toml"
    path.write_text(content, encoding="utf-8")
    return path


def test_load_app_config_full_file(tmp_path):
    path = write_config(
        tmp_path,
        """
[database]
engine = "sqlite"
path = "data/test.sqlite"
timeout = 2.5

[rollup]
skip_unchanged = true
max_attempts = 5

[logging]
level = "debug"

[series.water_sales]
strategy = "prefix_sum"
granularity = "iso_week"
label = "Water sales"

[series.debt_3_plus]
strategy = "merge"
granularity = "month"
direction = "higher_is_better"
""",
    )

    config = load_app_config(str(path))

    # Paths are resolved relative to the TOML file.
    assert config.database.path == (tmp_path / "data" / "test.sqlite").resolve()
    assert config.database.engine == "sqlite"
    assert config.database.timeout == 2.5

    assert config.rollup.skip_unchanged is True
    assert config.rollup.max_attempts == 5
    assert config.log_level == "DEBUG"

    water = config.series["water_sales"]
    assert water.strategy == "prefix_sum"
    assert water.granularity == "iso_week"
    assert water.kind == "amount"
    assert water.unique is False

    # Overrides replace the built-in declaration, other built-ins stay.
    assert config.series["debt_3_plus"].direction == "higher_is_better"
    assert config.series["daily_collections"] == DEFAULT_SERIES["daily_collections"]


def test_load_app_config_defaults(tmp_path):
    config = load_app_config(str(write_config(tmp_path, "")))

    assert config.database.path == (tmp_path / "data" / "db" / "ledger_rollup.sqlite").resolve()
    assert config.database.timeout == 5.0
    assert config.rollup.skip_unchanged is False
    assert config.rollup.max_attempts == 3
    assert config.log_level == "INFO"
    assert config.series == DEFAULT_SERIES


def test_load_app_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_app_config(str(tmp_path / "nope.toml"))


@pytest.mark.parametrize(
    "content",
    [
        "[database\npath = 1",
        "[rollup]\nmax_attempts = 0\n",
        "[rollup]\nmax_attempts = \"many\"\n",
        "[rollup]\nskip_unchanged = \"yes\"\n",
        "[database]\ntimeout = -1\n",
        "[logging]\nlevel = \"LOUD\"\n",
        "[series.x]\nstrategy = \"fifo\"\ngranularity = \"month\"\n",
        "[series.x]\nstrategy = \"merge\"\n",
        "[series.x]\nstrategy = \"merge\"\ngranularity = \"quarter\"\n",
        "database = 3\n",
    ],
)
def test_load_app_config_invalid_content(tmp_path, content):
    path = write_config(tmp_path, content)

    with pytest.raises(ValueError):
        load_app_config(str(path))


def test_default_app_config(tmp_path):
    config = default_app_config(tmp_path)

    assert config.database.path == (tmp_path / "data" / "db" / "ledger_rollup.sqlite").resolve()
    assert config.series == DEFAULT_SERIES
    assert config.series is not DEFAULT_SERIES
