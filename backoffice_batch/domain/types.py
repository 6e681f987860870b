"""
backoffice_batch.domain.types -- Pure frozen dataclasses for the batch engine.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - Backup records reach exactly one terminal status (COMPLETED/FAILED).
    - Schedule ledger status is None until the first run, then
      COMPLETED or FAILED.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class RunStatus(str, Enum):
    """Outcome of one run of a scheduled job."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Overlap guard rejected the run; never persisted


class ItemStatus(str, Enum):
    """Per-item outcome within a batch run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # No longer due when its own transaction started


class RecurrenceFrequency(str, Enum):
    """How often a recurring expense template spawns an instance."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ExpenseStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REIMBURSED = "reimbursed"


class BackupKind(str, Enum):
    """Who asked for a backup."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    AUTO = "auto"


class BackupStatus(str, Enum):
    """Backup record lifecycle: PENDING -> IN_PROGRESS -> COMPLETED | FAILED."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BackupStatus.COMPLETED, BackupStatus.FAILED)


# =============================================================================
# Batch run DTOs
# =============================================================================


@dataclass(frozen=True)
class ItemResult:
    """Immutable result of processing a single batch item.

    Each item runs in its own transaction -- failure of one item does not
    abort the batch.
    """

    item_key: str  # Business identifier (template id, backup id)
    status: ItemStatus
    error_code: str | None = None
    error_message: str | None = None
    result_data: dict[str, Any] | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class BatchRunResult:
    """Immutable result of one batch entrypoint call."""

    job_name: str
    total_items: int
    succeeded: int
    failed: int
    skipped: int
    item_results: tuple[ItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    @property
    def summary(self) -> str:
        return f"processed {self.succeeded} items"


# =============================================================================
# Expense DTOs
# =============================================================================


@dataclass(frozen=True)
class Expense:
    """Immutable snapshot of an expense row (template or instance)."""

    expense_id: UUID
    user_id: str
    description: str
    category: str
    amount: Decimal
    currency: str
    expense_date: date
    status: ExpenseStatus
    net_amount: Decimal | None = None
    tax_rate: Decimal | None = None
    tax_amount: Decimal | None = None
    project_id: UUID | None = None
    is_billable: bool = False
    is_reimbursable: bool = False
    tags: tuple[str, ...] = ()
    notes: str | None = None
    is_recurring: bool = False
    recurrence_frequency: str | None = None
    recurrence_start_date: date | None = None
    recurrence_end_date: date | None = None
    next_occurrence: date | None = None
    parent_expense_id: UUID | None = None


# =============================================================================
# Backup DTOs
# =============================================================================


@dataclass(frozen=True)
class BackupOptions:
    """What a backup covers.  ``name`` defaults to ``backup_<timestamp>``."""

    include_database: bool = True
    include_storage: bool = True
    include_config: bool = False
    name: str | None = None


@dataclass(frozen=True)
class BackupRecord:
    """Immutable snapshot of a backup record."""

    backup_id: UUID
    name: str
    kind: BackupKind
    status: BackupStatus
    include_database: bool
    include_storage: bool
    include_config: bool
    started_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    artifact_path: str | None = None
    size_bytes: int | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BackupSchedule:
    """Immutable snapshot of a cron-driven backup schedule."""

    schedule_id: UUID
    name: str
    cron_expression: str
    is_enabled: bool
    include_database: bool
    include_storage: bool
    include_config: bool
    retention_days: int
    notification_email: str | None = None
    created_by: str | None = None
    last_run_at: datetime | None = None
    last_run_status: RunStatus | None = None
    next_run_at: datetime | None = None
