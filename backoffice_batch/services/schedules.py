"""
BackupScheduleService -- CRUD for backup schedules, kept in step with timers.

Contract:
    Every create/update/delete of a ``system_backup_schedules`` row is
    followed by the matching ScheduleRegistry call, so the set of running
    timers always equals the set of enabled schedules.

Failure modes:
    - InvalidScheduleError before anything is persisted when a cron
      expression is malformed.
    - ScheduleNotFoundError for unknown schedule ids.
    - ``load_enabled()`` isolates failures per schedule: one bad row is
      logged and skipped, the rest are registered.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select

from backoffice_kernel.db.engine import SessionFactory, read_scope, transaction_scope
from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.exceptions import InvalidScheduleError, ScheduleNotFoundError
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.schedule import parse_cron
from backoffice_batch.domain.types import BackupSchedule
from backoffice_batch.models.backup import BackupScheduleModel
from backoffice_batch.services.backup import BackupOrchestrator
from backoffice_batch.services.dispatcher import (
    JobRunOutcome,
    ScheduleDefinition,
    TriggerDispatcher,
)
from backoffice_batch.services.ledger import ScheduleLedger, compute_next_run
from backoffice_batch.services.registry import ScheduleRegistry

logger = get_logger("batch.schedules")

_UPDATABLE_FIELDS = frozenset({
    "name",
    "cron_expression",
    "is_enabled",
    "include_database",
    "include_storage",
    "include_config",
    "retention_days",
    "notification_email",
})


class BackupScheduleService:
    """Manages backup schedules and their timers."""

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: ScheduleRegistry,
        dispatcher: TriggerDispatcher,
        backups: BackupOrchestrator,
        ledger: ScheduleLedger,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._dispatcher = dispatcher
        self._backups = backups
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or uuid4()

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create_schedule(
        self,
        name: str,
        cron_expression: str,
        created_by: str | None = None,
        is_enabled: bool = True,
        include_database: bool = True,
        include_storage: bool = True,
        include_config: bool = False,
        retention_days: int = 30,
        notification_email: str | None = None,
    ) -> BackupSchedule:
        """Persist a schedule and start its timer when enabled.

        Raises:
            InvalidScheduleError: If ``cron_expression`` is malformed.
            ValueError: If ``retention_days`` is negative.
        """
        parse_cron(cron_expression)
        _check_retention(retention_days)

        with transaction_scope(self._session_factory) as session:
            model = BackupScheduleModel(
                id=uuid4(),
                name=name,
                cron_expression=cron_expression,
                is_enabled=is_enabled,
                include_database=include_database,
                include_storage=include_storage,
                include_config=include_config,
                retention_days=retention_days,
                notification_email=notification_email,
                created_by=created_by,
                next_run_at=self._next_run(cron_expression) if is_enabled else None,
                created_by_id=self._actor_id,
            )
            session.add(model)
            session.flush()
            schedule = model.to_dto()

        self._registry.reschedule(self.definition_for(schedule))
        logger.info(
            "backup_schedule_created",
            extra={"schedule_id": str(schedule.schedule_id), "cron_expression": cron_expression},
        )
        return schedule

    def update_schedule(self, schedule_id: UUID, **changes: Any) -> BackupSchedule:
        """Apply ``changes`` and re-register the timer.

        Raises:
            ScheduleNotFoundError: If the schedule does not exist.
            InvalidScheduleError: If a new cron expression is malformed.
            ValueError: For unknown fields or a negative retention.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update schedule fields: {sorted(unknown)}")
        if "cron_expression" in changes:
            parse_cron(changes["cron_expression"])
        if "retention_days" in changes:
            _check_retention(changes["retention_days"])

        with transaction_scope(self._session_factory) as session:
            model = session.get(BackupScheduleModel, schedule_id)
            if model is None:
                raise ScheduleNotFoundError(str(schedule_id))
            for key, value in changes.items():
                setattr(model, key, value)
            model.next_run_at = (
                self._next_run(model.cron_expression) if model.is_enabled else None
            )
            model.updated_by_id = self._actor_id
            session.flush()
            schedule = model.to_dto()

        self._registry.reschedule(self.definition_for(schedule))
        logger.info(
            "backup_schedule_updated",
            extra={"schedule_id": str(schedule_id), "fields": sorted(changes)},
        )
        return schedule

    def delete_schedule(self, schedule_id: UUID) -> None:
        """Stop the timer and delete the row.  A run in flight finishes."""
        with transaction_scope(self._session_factory) as session:
            model = session.get(BackupScheduleModel, schedule_id)
            if model is None:
                raise ScheduleNotFoundError(str(schedule_id))
            session.delete(model)

        self._registry.unregister(str(schedule_id))
        self._dispatcher.release(str(schedule_id))
        logger.info("backup_schedule_deleted", extra={"schedule_id": str(schedule_id)})

    def get_schedule(self, schedule_id: UUID) -> BackupSchedule:
        with read_scope(self._session_factory) as session:
            model = session.get(BackupScheduleModel, schedule_id)
            if model is None:
                raise ScheduleNotFoundError(str(schedule_id))
            return model.to_dto()

    def list_schedules(self) -> tuple[BackupSchedule, ...]:
        with read_scope(self._session_factory) as session:
            models = session.execute(
                select(BackupScheduleModel).order_by(BackupScheduleModel.name)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    def get_enabled_schedules(self) -> tuple[BackupSchedule, ...]:
        return tuple(s for s in self.list_schedules() if s.is_enabled)

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def load_enabled(self) -> int:
        """Register timers for every enabled schedule.  Returns how many."""
        registered = 0
        for schedule in self.get_enabled_schedules():
            try:
                self._registry.register(self.definition_for(schedule))
            except InvalidScheduleError:
                logger.error(
                    "schedule_registration_failed",
                    exc_info=True,
                    extra={"schedule_id": str(schedule.schedule_id)},
                )
                continue
            registered += 1
        logger.info("backup_schedules_loaded", extra={"registered": registered})
        return registered

    def trigger(self, schedule_id: UUID) -> JobRunOutcome:
        """Run a schedule's backup now, behind the same overlap guard."""
        schedule = self.get_schedule(schedule_id)
        self._dispatcher.bind(self.definition_for(schedule))
        return self._dispatcher.trigger(str(schedule_id))

    def definition_for(self, schedule: BackupSchedule) -> ScheduleDefinition:
        return ScheduleDefinition(
            schedule_id=str(schedule.schedule_id),
            name=schedule.name,
            cron_expression=schedule.cron_expression,
            job=self._backups.run_scheduled_backup,
            is_enabled=schedule.is_enabled,
            config={
                "include_database": schedule.include_database,
                "include_storage": schedule.include_storage,
                "include_config": schedule.include_config,
                "retention_days": schedule.retention_days,
                "notification_email": schedule.notification_email,
            },
            ledger=self._ledger,
        )

    def _next_run(self, cron_expression: str) -> datetime:
        return compute_next_run(cron_expression, self._clock.now(), self._registry.timezone)


def _check_retention(retention_days: int) -> None:
    if retention_days < 0:
        raise ValueError(f"retention_days must be >= 0, got {retention_days}")
