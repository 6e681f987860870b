"""
RetentionSweeper -- deletes completed backups past their retention window.

Contract:
    ``cleanup_old_backups(retention_days)`` deletes every COMPLETED backup
    started more than ``retention_days`` ago: artifact first, then record,
    one transaction per backup.  Returns the number deleted.

Invariants enforced:
    - Only COMPLETED backups are swept; IN_PROGRESS and FAILED records stay.
    - A failure on one backup never stops the sweep.  The record survives
      and the next sweep retries it.
    - An artifact that is already gone does not block deleting its record.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from uuid import UUID

from sqlalchemy import select

from backoffice_kernel.db.engine import SessionFactory, read_scope, transaction_scope
from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.exceptions import BackupNotFoundError, TransientItemError
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.types import BackupStatus
from backoffice_batch.models.backup import BackupRecordModel
from backoffice_batch.services.artifacts import ArtifactStore

logger = get_logger("batch.retention")


class RetentionSweeper:
    """Ages out completed backups."""

    def __init__(
        self,
        session_factory: SessionFactory,
        artifacts: ArtifactStore,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._artifacts = artifacts
        self._clock = clock or SystemClock()

    def cleanup_old_backups(self, retention_days: int = 30) -> int:
        """Delete completed backups older than ``retention_days``.

        Raises:
            ValueError: If ``retention_days`` is negative.
        """
        if retention_days < 0:
            raise ValueError(f"retention_days must be >= 0, got {retention_days}")

        threshold = self._clock.now() - timedelta(days=retention_days)
        with read_scope(self._session_factory) as session:
            expired = session.execute(
                select(BackupRecordModel.id)
                .where(
                    BackupRecordModel.status == BackupStatus.COMPLETED.value,
                    BackupRecordModel.started_at < threshold,
                )
                .order_by(BackupRecordModel.started_at)
            ).scalars().all()

        deleted = 0
        failed = 0
        for backup_id in expired:
            try:
                self._sweep_one(backup_id)
            except BackupNotFoundError:
                # Deleted concurrently
                continue
            except TransientItemError as exc:
                failed += 1
                logger.warning(
                    "retention_delete_failed",
                    exc_info=True,
                    extra={"backup_id": str(backup_id), "reason": exc.reason},
                )
                continue
            deleted += 1

        logger.info(
            "retention_sweep_completed",
            extra={
                "retention_days": retention_days,
                "candidates": len(expired),
                "deleted": deleted,
                "failed": failed,
            },
        )
        return deleted

    def delete_backup(self, backup_id: UUID) -> None:
        """Delete one backup's artifact and record.

        Raises:
            BackupNotFoundError: If no record exists for ``backup_id``.
        """
        with transaction_scope(self._session_factory) as session:
            model = session.get(BackupRecordModel, backup_id)
            if model is None:
                raise BackupNotFoundError(str(backup_id))
            if model.artifact_path:
                self._artifacts.remove(Path(model.artifact_path))
            session.delete(model)

        logger.info("backup_deleted", extra={"backup_id": str(backup_id)})

    def _sweep_one(self, backup_id: UUID) -> None:
        try:
            self.delete_backup(backup_id)
        except BackupNotFoundError:
            raise
        except Exception as exc:
            raise TransientItemError(str(backup_id), str(exc)) from exc
