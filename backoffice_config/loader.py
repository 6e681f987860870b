"""
Settings loader (``backoffice_config.loader``).

Responsibility
--------------
Reads an optional YAML settings file and applies environment-variable
overrides, producing a validated ``EngineSettings``.

YAML layout::

    database:
      url: postgresql://backoffice:secret@db/backoffice
    scheduler:
      timezone: Europe/Berlin
      recurring_expense_cron: "0 2 * * *"
      catch_up_missed: false
    backup:
      backup_path: /srv/backoffice/backups
      scripts_path: /srv/backoffice/scripts
      procedure_timeout_seconds: 3600
      default_retention_days: 30

Environment overrides (win over the file): ``DATABASE_URL``,
``BACKUP_PATH``, ``SCRIPTS_PATH``, ``BACKOFFICE_TIMEZONE``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``ConfigurationError`` wrapping the parser error.
* Wrong shapes or out-of-range values  -> ``ConfigurationError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from backoffice_config.schema import (
    BackupSettings,
    DatabaseSettings,
    EngineSettings,
    SchedulerSettings,
)
from backoffice_kernel.exceptions import ConfigurationError
from backoffice_kernel.logging_config import get_logger

logger = get_logger("config.loader")

_ENV_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("DATABASE_URL", "database", "url"),
    ("BACKUP_PATH", "backup", "backup_path"),
    ("SCRIPTS_PATH", "backup", "scripts_path"),
    ("BACKOFFICE_TIMEZONE", "scheduler", "timezone"),
)


def load_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Load settings from ``path`` (optional) and the environment."""
    raw: dict[str, Any] = {}
    if path is not None:
        with open(path, encoding="utf-8") as fh:
            try:
                loaded = yaml.safe_load(fh)
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Settings file {path} is not valid YAML: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Settings file {path} must contain a mapping, "
                f"got {type(loaded).__name__}"
            )
        raw = loaded or {}

    env = os.environ if environ is None else environ
    for var, section, key in _ENV_OVERRIDES:
        value = env.get(var)
        if value:
            raw[section] = {**_section(raw, section), key: value}

    settings = EngineSettings(
        database=_parse_database(_section(raw, "database")),
        scheduler=_parse_scheduler(_section(raw, "scheduler")),
        backup=_parse_backup(_section(raw, "backup")),
    )
    logger.info(
        "settings_loaded",
        extra={
            "source": str(path) if path is not None else None,
            "timezone": settings.scheduler.timezone,
            "backup_path": settings.backup.backup_path,
        },
    )
    return settings


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Settings section '{name}' must be a mapping")
    return value


def _positive_int(value: Any, name: str, allow_zero: bool = False) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None
    if number < 0 or (number == 0 and not allow_zero):
        raise ConfigurationError(f"{name} out of range: {number}")
    return number


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _parse_database(data: dict[str, Any]) -> DatabaseSettings:
    defaults = DatabaseSettings()
    return DatabaseSettings(
        url=str(data.get("url", defaults.url)),
        echo=_as_bool(data.get("echo", defaults.echo), "database.echo"),
    )


def _parse_scheduler(data: dict[str, Any]) -> SchedulerSettings:
    defaults = SchedulerSettings()
    timezone = str(data.get("timezone", defaults.timezone))
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone: {timezone}") from None

    return SchedulerSettings(
        timezone=timezone,
        recurring_expense_cron=str(
            data.get("recurring_expense_cron", defaults.recurring_expense_cron)
        ),
        catch_up_missed=_as_bool(
            data.get("catch_up_missed", defaults.catch_up_missed),
            "scheduler.catch_up_missed",
        ),
    )


def _parse_backup(data: dict[str, Any]) -> BackupSettings:
    defaults = BackupSettings()
    return BackupSettings(
        backup_path=Path(data.get("backup_path", defaults.backup_path)),
        scripts_path=Path(data.get("scripts_path", defaults.scripts_path)),
        backup_script=str(data.get("backup_script", defaults.backup_script)),
        restore_script=str(data.get("restore_script", defaults.restore_script)),
        procedure_timeout_seconds=_positive_int(
            data.get("procedure_timeout_seconds", defaults.procedure_timeout_seconds),
            "backup.procedure_timeout_seconds",
        ),
        default_retention_days=_positive_int(
            data.get("default_retention_days", defaults.default_retention_days),
            "backup.default_retention_days",
            allow_zero=True,
        ),
    )
