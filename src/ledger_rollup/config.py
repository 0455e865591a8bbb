# Ledger Rollup - Derived period aggregates for monthly ledgers
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for Ledger Rollup.

This module is responsible for:
- loading the application configuration from a TOML file,
- building the series catalogue (built-in series plus [series.*] tables),
- exposing typed dataclasses used by the rest of the application.
"""

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .db import DatabaseConfig
from .engine import DEFAULT_MAX_ATTEMPTS
from .entries_service import RollupOptions
from .series import DEFAULT_SERIES, SeriesDefinition, series_from_mapping

DEFAULT_CONFIG_FILE = "ledger_rollup.toml"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for Ledger Rollup.

    This aggregates:
    - the database configuration (where entries are stored),
    - the rollup options applied by the entry services,
    - the log level,
    - the series catalogue.
    """

    database: DatabaseConfig
    rollup: RollupOptions
    log_level: str
    series: dict[str, SeriesDefinition]


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        raise ValueError(f"Invalid [{name}] section in the configuration, expected a table.")
    return section


def _parse_database(raw: Mapping[str, Any], base_dir: Path) -> DatabaseConfig:
    database_section = _section(raw, "database")

    db_engine = str(database_section.get("engine") or "sqlite")
    db_path_raw = database_section.get("path") or "data/db/ledger_rollup.sqlite"
    db_path = (base_dir / str(db_path_raw)).resolve()

    try:
        timeout = float(database_section.get("timeout", 5.0))
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid value for 'database.timeout' in the configuration. "
            "Expected a number of seconds."
        ) from exc
    if timeout < 0:
        raise ValueError("'database.timeout' cannot be negative.")

    return DatabaseConfig(engine=db_engine, path=db_path, timeout=timeout)


def _parse_rollup(raw: Mapping[str, Any]) -> RollupOptions:
    rollup_section = _section(raw, "rollup")

    skip_unchanged = rollup_section.get("skip_unchanged", False)
    if not isinstance(skip_unchanged, bool):
        raise ValueError("'rollup.skip_unchanged' must be true or false.")

    try:
        max_attempts = int(rollup_section.get("max_attempts", DEFAULT_MAX_ATTEMPTS))
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid value for 'rollup.max_attempts' in the configuration. "
            "Expected an integer."
        ) from exc
    if max_attempts < 1:
        raise ValueError("'rollup.max_attempts' must be at least 1.")

    return RollupOptions(skip_unchanged=skip_unchanged, max_attempts=max_attempts)


def _parse_series(raw: Mapping[str, Any]) -> dict[str, SeriesDefinition]:
    """Return the built-in catalogue updated with the [series.*] tables."""
    catalogue = dict(DEFAULT_SERIES)

    series_section = _section(raw, "series")
    for series_id, table in series_section.items():
        if not isinstance(table, Mapping):
            raise ValueError(f"Invalid [series.{series_id}] section, expected a table.")
        catalogue[str(series_id)] = series_from_mapping(str(series_id), table)

    return catalogue


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the Ledger Rollup application configuration from a TOML file.

    Expected top-level sections in the TOML file (all optional)
    ----------------------------------------------------------
    [database]
        engine ("sqlite"), path of the SQLite file and busy timeout in
        seconds.

    [rollup]
        skip_unchanged (write only running totals that change) and
        max_attempts (lock-conflict retries of a recompute or merge).

    [logging]
        level: DEBUG, INFO, WARNING or ERROR.

    [series.<series_id>]
        Extra series, or overrides of built-in ones: strategy, granularity,
        kind, unique, direction, label.

    Notes
    -----
    All file paths in the TOML are resolved relative to the directory of the
    TOML file itself.

    Parameters
    ----------
    config_path:
        Path to the TOML configuration file. Defaults to ``ledger_rollup.toml``
        in the current working directory.

    Returns
    -------
    AppConfig
        Parsed and validated application configuration.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    ValueError
        If the file cannot be parsed or holds invalid values.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    base_dir = config_file.parent

    # 1) Database section
    database_config = _parse_database(raw, base_dir)

    # 2) Rollup options
    rollup_options = _parse_rollup(raw)

    # 3) Logging
    logging_section = _section(raw, "logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(
            f"Invalid log level {log_level!r}. Expected one of: {', '.join(_LOG_LEVELS)}."
        )

    # 4) Series catalogue
    series = _parse_series(raw)

    return AppConfig(
        database=database_config,
        rollup=rollup_options,
        log_level=log_level,
        series=series,
    )


def default_app_config(base_dir: Optional[Path] = None) -> AppConfig:
    """
    Return the configuration used when no TOML file is available.

    The database lives under ``data/db/`` relative to ``base_dir`` (the
    current working directory by default).
    """
    root = (base_dir or Path.cwd()).resolve()
    return AppConfig(
        database=DatabaseConfig(
            engine="sqlite",
            path=root / "data" / "db" / "ledger_rollup.sqlite",
        ),
        rollup=RollupOptions(),
        log_level="INFO",
        series=dict(DEFAULT_SERIES),
    )
