"""
backoffice_batch.services -- stateful services of the scheduling engine.

Timers (ScheduleRegistry) hand ticks to the TriggerDispatcher, which runs
job bodies (RecurringExpenseGenerator, BackupOrchestrator) behind a
per-schedule overlap guard.
"""

from backoffice_batch.services.artifacts import ArtifactStore
from backoffice_batch.services.backup import BackupOrchestrator
from backoffice_batch.services.dispatcher import (
    JobContext,
    JobRunOutcome,
    ScheduleDefinition,
    TriggerDispatcher,
)
from backoffice_batch.services.ledger import ScheduleLedger
from backoffice_batch.services.procedures import (
    ProcedureResult,
    ProcedureRunner,
    ShellProcedureRunner,
)
from backoffice_batch.services.recurring import (
    RECURRING_EXPENSES_SCHEDULE_ID,
    RecurringExpenseGenerator,
)
from backoffice_batch.services.registry import CronTimer, ScheduleRegistry
from backoffice_batch.services.retention import RetentionSweeper
from backoffice_batch.services.schedules import BackupScheduleService

__all__ = [
    "ArtifactStore",
    "BackupOrchestrator",
    "BackupScheduleService",
    "CronTimer",
    "JobContext",
    "JobRunOutcome",
    "ProcedureResult",
    "ProcedureRunner",
    "RECURRING_EXPENSES_SCHEDULE_ID",
    "RecurringExpenseGenerator",
    "RetentionSweeper",
    "ScheduleDefinition",
    "ScheduleLedger",
    "ScheduleRegistry",
    "ShellProcedureRunner",
    "TriggerDispatcher",
]
