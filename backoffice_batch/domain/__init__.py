"""
backoffice_batch.domain -- Pure types and functions for the batch engine.

ZERO I/O.  All types are frozen dataclasses.
"""

from backoffice_batch.domain.recurrence import advance_occurrence, parse_frequency
from backoffice_batch.domain.schedule import (
    CronSpec,
    is_valid_cron,
    matches_cron,
    next_fire_time,
    parse_cron,
)
from backoffice_batch.domain.types import (
    BackupKind,
    BackupOptions,
    BackupRecord,
    BackupSchedule,
    BackupStatus,
    BatchRunResult,
    Expense,
    ExpenseStatus,
    ItemResult,
    ItemStatus,
    RecurrenceFrequency,
    RunStatus,
)

__all__ = [
    "BackupKind",
    "BackupOptions",
    "BackupRecord",
    "BackupSchedule",
    "BackupStatus",
    "BatchRunResult",
    "CronSpec",
    "Expense",
    "ExpenseStatus",
    "ItemResult",
    "ItemStatus",
    "RecurrenceFrequency",
    "RunStatus",
    "advance_occurrence",
    "is_valid_cron",
    "matches_cron",
    "next_fire_time",
    "parse_cron",
    "parse_frequency",
]
