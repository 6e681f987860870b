"""
backoffice_config -- typed settings for the back-office engine.

``load_settings()`` is the single entrypoint: it reads an optional YAML
file, applies environment overrides and returns a frozen
``EngineSettings``.
"""

from backoffice_config.loader import load_settings
from backoffice_config.schema import (
    BackupSettings,
    DatabaseSettings,
    EngineSettings,
    SchedulerSettings,
)

__all__ = [
    "BackupSettings",
    "DatabaseSettings",
    "EngineSettings",
    "SchedulerSettings",
    "load_settings",
]
