"""
Typed settings for the back-office engine (``backoffice_config.schema``).

Every settings object is a frozen dataclass.  Defaults mirror a single-host
installation: backups under ``./backups``, external procedures under
``./scripts``, scheduling in UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class DatabaseSettings:
    """Relational store connection."""

    url: str = "sqlite:///backoffice.db"
    echo: bool = False


@dataclass(frozen=True)
class SchedulerSettings:
    """Timer and dispatch configuration.

    ``timezone`` is an IANA name; cron ticks and "today" for the recurring
    expense generator are evaluated in it.
    """

    timezone: str = "UTC"
    recurring_expense_cron: str = "0 2 * * *"
    catch_up_missed: bool = False


@dataclass(frozen=True)
class BackupSettings:
    """External backup/restore procedure and artifact locations."""

    backup_path: Path = field(default_factory=lambda: Path.cwd() / "backups")
    scripts_path: Path = field(default_factory=lambda: Path.cwd() / "scripts")
    backup_script: str = "backup.sh"
    restore_script: str = "restore.sh"
    procedure_timeout_seconds: int = 3600
    default_retention_days: int = 30


@dataclass(frozen=True)
class EngineSettings:
    """Root settings object handed to ``SchedulingEngine.from_settings``."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    backup: BackupSettings = field(default_factory=BackupSettings)
