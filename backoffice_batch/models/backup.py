"""
ORM models for backup persistence.

Contract:
    BackupRecordModel persists one backup's lifecycle; BackupScheduleModel
    persists a cron-driven backup schedule and its run ledger.  Each has a
    ``to_dto()`` method.

Invariants enforced:
    - A backup record is inserted IN_PROGRESS and updated exactly once to
      COMPLETED or FAILED.
    - ``last_run_status`` is NULL, 'completed' or 'failed'.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backoffice_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from backoffice_batch.domain.types import BackupRecord, BackupSchedule


class BackupRecordModel(TrackedBase):
    """One backup and its artifact."""

    __tablename__ = "system_backups"

    __table_args__ = (
        Index("ix_system_backups_status_started", "status", "started_at"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    artifact_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(nullable=True)
    include_database: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_storage: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_config: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    started_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dto(self) -> BackupRecord:
        from backoffice_batch.domain.types import BackupKind, BackupRecord, BackupStatus

        return BackupRecord(
            backup_id=self.id,
            name=self.name,
            kind=BackupKind(self.kind),
            status=BackupStatus(self.status),
            include_database=self.include_database,
            include_storage=self.include_storage,
            include_config=self.include_config,
            started_by=self.started_by,
            started_at=self.started_at,
            completed_at=self.completed_at,
            artifact_path=self.artifact_path,
            size_bytes=self.size_bytes,
            error_message=self.error_message,
            metadata=dict(self.details or {}),
        )


class BackupScheduleModel(TrackedBase):
    """Cron-driven backup schedule with its last-run ledger."""

    __tablename__ = "system_backup_schedules"

    __table_args__ = (
        Index("ix_system_backup_schedules_enabled", "is_enabled"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_database: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_storage: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_config: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retention_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    notification_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_run_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> BackupSchedule:
        from backoffice_batch.domain.types import BackupSchedule, RunStatus

        return BackupSchedule(
            schedule_id=self.id,
            name=self.name,
            cron_expression=self.cron_expression,
            is_enabled=self.is_enabled,
            include_database=self.include_database,
            include_storage=self.include_storage,
            include_config=self.include_config,
            retention_days=self.retention_days,
            notification_email=self.notification_email,
            created_by=self.created_by,
            last_run_at=self.last_run_at,
            last_run_status=(
                RunStatus(self.last_run_status) if self.last_run_status else None
            ),
            next_run_at=self.next_run_at,
        )
