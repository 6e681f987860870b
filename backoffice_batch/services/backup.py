"""
BackupOrchestrator -- backup/restore lifecycle around external procedures.

Contract:
    ``create_backup()`` records a backup IN_PROGRESS, runs the backup
    procedure into the backup's artifact directory, measures the artifact,
    and moves the record to COMPLETED -- or to FAILED with the error
    message, re-raising the error.

    ``restore_backup()`` runs the restore procedure against a COMPLETED
    backup whose artifact is present.  Anything else raises
    BackupIntegrityError before the procedure is invoked.

Architecture: backoffice_batch/services.  Procedures come from
    ``procedures.py``, the filesystem side from ``artifacts.py``, age-out
    from ``retention.py``.

Invariants enforced:
    - The IN_PROGRESS record is committed before the procedure starts, so a
      crashed run is visible.
    - A record transitions out of IN_PROGRESS exactly once.
    - A failed backup is never marked COMPLETED and never restored.
    - Each backup owns its artifact directory: a taken name is refused
      before any record is written, and the directory is created fresh.

Failure modes:
    - ProcedureNotConfiguredError / ProcedureFailedError /
      MissingArtifactError from ``create_backup()`` (record left FAILED).
    - BackupExistsError from ``create_backup()`` for a taken name (no record).
    - BackupNotFoundError / BackupIntegrityError from ``restore_backup()``.
    - Restore procedure failures propagate unchanged.
"""

from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import or_, select

from backoffice_kernel.db.engine import SessionFactory, read_scope, transaction_scope
from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.exceptions import (
    BackupExistsError,
    BackupIntegrityError,
    BackupNotFoundError,
)
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.types import (
    BackupKind,
    BackupOptions,
    BackupRecord,
    BackupStatus,
)
from backoffice_batch.models.backup import BackupRecordModel
from backoffice_batch.services.artifacts import ArtifactStore, slugify
from backoffice_batch.services.dispatcher import JobContext
from backoffice_batch.services.procedures import ProcedureRunner
from backoffice_batch.services.retention import RetentionSweeper

logger = get_logger("batch.backup")

SYSTEM_INITIATOR = "system"


class BackupOrchestrator:
    """Creates, restores, lists and deletes backups.

    Non-goals:
        - Does NOT know what a backup contains; the procedures decide.
        - Does NOT own timers; scheduled backups arrive through
          ``run_scheduled_backup()`` as a job body.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        procedures: ProcedureRunner,
        artifacts: ArtifactStore,
        sweeper: RetentionSweeper | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ):
        self._session_factory = session_factory
        self._procedures = procedures
        self._artifacts = artifacts
        self._sweeper = sweeper or RetentionSweeper(session_factory, artifacts, clock)
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or uuid4()

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._sweeper

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create_backup(
        self,
        initiator: str,
        options: BackupOptions | None = None,
        kind: BackupKind = BackupKind.MANUAL,
    ) -> BackupRecord:
        """Run a backup to completion.  Returns the COMPLETED record.

        An explicit ``options.name`` must be unused.  Without one the name
        is ``backup_<timestamp>``, suffixed ``_2``, ``_3``... when taken.

        Raises:
            ValueError: If ``options.name`` is not a safe artifact name.
            BackupExistsError: If ``options.name`` is already taken.  No
                record is written.
            BackupError / ConfigurationError: After marking the record FAILED.
        """
        started_at = self._clock.now()
        return self._create(
            initiator, options or BackupOptions(), kind, started_at,
            default_name=f"backup_{_timestamp(started_at)}",
        )

    def _create(
        self,
        initiator: str,
        options: BackupOptions,
        kind: BackupKind,
        started_at: datetime,
        default_name: str,
    ) -> BackupRecord:
        if options.name:
            target = self._claim(options.name)
        else:
            target = self._claim_unique(default_name)
        name = target.name
        options = replace(options, name=name)

        try:
            backup_id = self._insert_in_progress(name, kind, options, initiator, started_at)
        except Exception:
            target.rmdir()
            raise
        logger.info(
            "backup_started",
            extra={
                "backup_id": str(backup_id),
                "backup_name": name,
                "kind": kind.value,
                "initiator": initiator,
            },
        )

        start = time.monotonic()
        try:
            result = self._procedures.run_backup(target, options)
            size_bytes = self._artifacts.measure(target)
            record = self._finish(
                backup_id,
                BackupStatus.COMPLETED,
                artifact_path=str(target),
                size_bytes=size_bytes,
                details={
                    "duration_ms": int((time.monotonic() - start) * 1000),
                    "output": result.stdout_tail,
                },
            )
        except Exception as exc:
            self._mark_failed(backup_id, exc)
            logger.error(
                "backup_failed",
                exc_info=True,
                extra={"backup_id": str(backup_id), "backup_name": name},
            )
            raise

        logger.info(
            "backup_completed",
            extra={
                "backup_id": str(backup_id),
                "backup_name": name,
                "size_bytes": record.size_bytes,
            },
        )
        return record

    def _claim(self, name: str) -> Path:
        """Reserve ``name``: no record may use it and its directory must be new."""
        path = self._artifacts.path_for(name)
        with read_scope(self._session_factory) as session:
            taken = session.execute(
                select(BackupRecordModel.id).where(or_(
                    BackupRecordModel.name == name,
                    BackupRecordModel.artifact_path == str(path),
                )).limit(1)
            ).first()
        if taken is not None:
            raise BackupExistsError(name)
        return self._artifacts.prepare(name)

    def _claim_unique(self, base: str) -> Path:
        name, attempt = base, 1
        while True:
            try:
                return self._claim(name)
            except BackupExistsError:
                attempt += 1
                name = f"{base}_{attempt}"

    def _insert_in_progress(
        self,
        name: str,
        kind: BackupKind,
        options: BackupOptions,
        initiator: str,
        started_at: datetime,
    ) -> UUID:
        backup_id = uuid4()
        with transaction_scope(self._session_factory) as session:
            session.add(BackupRecordModel(
                id=backup_id,
                name=name,
                kind=kind.value,
                status=BackupStatus.IN_PROGRESS.value,
                artifact_path=str(self._artifacts.path_for(name)),
                include_database=options.include_database,
                include_storage=options.include_storage,
                include_config=options.include_config,
                started_by=initiator,
                started_at=started_at,
                created_by_id=self._actor_id,
            ))
        return backup_id

    def _finish(
        self,
        backup_id: UUID,
        status: BackupStatus,
        **fields: Any,
    ) -> BackupRecord:
        with transaction_scope(self._session_factory) as session:
            model = session.get(BackupRecordModel, backup_id)
            if model is None:
                raise BackupNotFoundError(str(backup_id))
            if BackupStatus(model.status).is_terminal:
                logger.warning(
                    "backup_already_terminal",
                    extra={"backup_id": str(backup_id), "status": model.status},
                )
                return model.to_dto()
            model.status = status.value
            model.completed_at = self._clock.now()
            model.updated_by_id = self._actor_id
            for key, value in fields.items():
                setattr(model, key, value)
            session.flush()
            return model.to_dto()

    def _mark_failed(self, backup_id: UUID, exc: Exception) -> None:
        try:
            self._finish(
                backup_id,
                BackupStatus.FAILED,
                error_message=str(exc) or type(exc).__name__,
            )
        except Exception:
            # The original error is what the caller needs to see.
            logger.exception("backup_status_update_failed", extra={"backup_id": str(backup_id)})

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore_backup(self, backup_id: UUID, initiator: str) -> None:
        """Restore from a COMPLETED backup.

        Raises:
            BackupNotFoundError: If the record does not exist.
            BackupIntegrityError: If the backup is not COMPLETED or its
                artifact is missing.  The procedure is never invoked.
        """
        record = self.get_backup(backup_id)

        if record.status != BackupStatus.COMPLETED:
            raise BackupIntegrityError(str(backup_id), f"status is {record.status.value}")
        if not record.artifact_path or not self._artifacts.exists(record.artifact_path):
            raise BackupIntegrityError(str(backup_id), "artifact missing on disk")

        logger.info(
            "restore_started",
            extra={"backup_id": str(backup_id), "initiator": initiator},
        )
        options = BackupOptions(
            include_database=record.include_database,
            include_storage=record.include_storage,
            include_config=record.include_config,
            name=record.name,
        )
        try:
            self._procedures.run_restore(Path(record.artifact_path), options)
        except Exception:
            logger.error("restore_failed", exc_info=True, extra={"backup_id": str(backup_id)})
            raise
        logger.info("restore_completed", extra={"backup_id": str(backup_id)})

    # -------------------------------------------------------------------------
    # Queries and deletion
    # -------------------------------------------------------------------------

    def get_backup(self, backup_id: UUID) -> BackupRecord:
        with read_scope(self._session_factory) as session:
            model = session.get(BackupRecordModel, backup_id)
            if model is None:
                raise BackupNotFoundError(str(backup_id))
            return model.to_dto()

    def list_backups(self, limit: int = 50, offset: int = 0) -> tuple[BackupRecord, ...]:
        """Backups newest first."""
        with read_scope(self._session_factory) as session:
            models = session.execute(
                select(BackupRecordModel)
                .order_by(BackupRecordModel.started_at.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    def delete_backup(self, backup_id: UUID) -> None:
        self._sweeper.delete_backup(backup_id)

    def rescan_artifacts(self) -> int:
        """Register artifact directories that have no backup record.

        Orphans are recorded COMPLETED with kind AUTO and the directory's
        modification time as ``started_at``.  Returns how many were added.
        """
        with read_scope(self._session_factory) as session:
            known = set(session.execute(select(BackupRecordModel.artifact_path)).scalars())

        added = 0
        for path in self._artifacts.discover():
            if str(path) in known:
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            if self._clock.now().tzinfo is None:
                modified = modified.replace(tzinfo=None)
            with transaction_scope(self._session_factory) as session:
                session.add(BackupRecordModel(
                    name=path.name,
                    kind=BackupKind.AUTO.value,
                    status=BackupStatus.COMPLETED.value,
                    artifact_path=str(path),
                    size_bytes=self._artifacts.measure(path),
                    started_by=SYSTEM_INITIATOR,
                    started_at=modified,
                    completed_at=modified,
                    created_by_id=self._actor_id,
                ))
            added += 1

        logger.info("artifacts_rescanned", extra={"added": added})
        return added

    # -------------------------------------------------------------------------
    # Scheduled job body
    # -------------------------------------------------------------------------

    def run_scheduled_backup(self, context: JobContext) -> int:
        """Job body for a backup schedule: back up, then sweep retention."""
        config = context.config
        started_at = self._clock.now()
        options = BackupOptions(
            include_database=bool(config.get("include_database", True)),
            include_storage=bool(config.get("include_storage", True)),
            include_config=bool(config.get("include_config", False)),
        )
        self._create(
            SYSTEM_INITIATOR, options, BackupKind.SCHEDULED, started_at,
            default_name=f"scheduled_{slugify(context.name)}_{_timestamp(started_at)}",
        )

        retention_days = int(config.get("retention_days", 0))
        if retention_days > 0:
            self._sweeper.cleanup_old_backups(retention_days)
        return 1


def _timestamp(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%S")
