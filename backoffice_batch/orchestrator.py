"""
SchedulingEngine -- DI container for the back-office scheduling engine.

Contract:
    Wires the dispatcher, registry, recurring expense generator, backup
    orchestrator, retention sweeper and backup schedule service around one
    session factory and one Clock.  Single place where all engine
    dependencies are composed.

Architecture: backoffice_batch (top-level).  The canonical entry point for
    the CLI and for embedding the engine in another process.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - The recurring expense job is bound at construction, so a manual
      trigger works before ``start()``.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy.engine import Engine

from backoffice_config.schema import EngineSettings
from backoffice_kernel.db.engine import (
    SessionFactory,
    create_engine,
    create_session_factory,
    create_tables,
)
from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.types import BackupSchedule
from backoffice_batch.services.artifacts import ArtifactStore
from backoffice_batch.services.backup import BackupOrchestrator
from backoffice_batch.services.dispatcher import (
    JobRunOutcome,
    ScheduleDefinition,
    TriggerDispatcher,
)
from backoffice_batch.services.ledger import ScheduleLedger
from backoffice_batch.services.procedures import ProcedureRunner, ShellProcedureRunner
from backoffice_batch.services.recurring import (
    RECURRING_EXPENSES_SCHEDULE_ID,
    RecurringExpenseGenerator,
)
from backoffice_batch.services.registry import ScheduleRegistry
from backoffice_batch.services.retention import RetentionSweeper
from backoffice_batch.services.schedules import BackupScheduleService

logger = get_logger("batch.orchestrator")


class SchedulingEngine:
    """DI container for the scheduling engine.

    Contract:
        - ``from_settings()`` builds a fully wired engine (and its database
          engine) from ``EngineSettings``.
        - ``start()`` registers the recurring expense timer and every
          enabled backup schedule.
        - ``stop()`` stops all timers and waits for in-flight runs.

    Non-goals:
        - Does NOT configure logging -- the CLI or host process does.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        procedures: ProcedureRunner | None = None,
        db_engine: Engine | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._db_engine = db_engine
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or uuid4()

        scheduler = self._settings.scheduler
        backup = self._settings.backup

        self._dispatcher = TriggerDispatcher(
            clock=self._clock,
        )
        self._registry = ScheduleRegistry(
            self._dispatcher, timezone_name=scheduler.timezone, clock=self._clock,
        )
        self._generator = RecurringExpenseGenerator(
            session_factory,
            clock=self._clock,
            actor_id=self._actor_id,
            timezone_name=scheduler.timezone,
            catch_up_missed=scheduler.catch_up_missed,
        )
        self._artifacts = ArtifactStore(backup.backup_path)
        self._sweeper = RetentionSweeper(session_factory, self._artifacts, clock=self._clock)
        self._backups = BackupOrchestrator(
            session_factory,
            procedures or ShellProcedureRunner(
                backup.scripts_path,
                backup_script=backup.backup_script,
                restore_script=backup.restore_script,
                timeout_seconds=backup.procedure_timeout_seconds,
            ),
            self._artifacts,
            sweeper=self._sweeper,
            clock=self._clock,
            actor_id=self._actor_id,
        )
        self._ledger = ScheduleLedger(
            session_factory, clock=self._clock, timezone_name=scheduler.timezone,
        )
        self._backup_schedules = BackupScheduleService(
            session_factory,
            self._registry,
            self._dispatcher,
            self._backups,
            self._ledger,
            clock=self._clock,
            actor_id=self._actor_id,
        )

        self._dispatcher.bind(self._recurring_definition())
        self._started = False

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        procedures: ProcedureRunner | None = None,
        create_schema: bool = True,
    ) -> SchedulingEngine:
        """Create the database engine and a fully wired SchedulingEngine."""
        db_engine = create_engine(settings.database.url, echo=settings.database.echo)
        if create_schema:
            create_tables(db_engine)
        return cls(
            create_session_factory(db_engine),
            settings=settings,
            clock=clock,
            actor_id=actor_id,
            procedures=procedures,
            db_engine=db_engine,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Register all timers.

        Raises:
            InvalidScheduleError: If the recurring expense cron is malformed.
        """
        if self._started:
            return
        self._registry.register(self._recurring_definition())
        loaded = self._backup_schedules.load_enabled()
        self._started = True
        logger.info(
            "engine_started",
            extra={
                "timezone": self._settings.scheduler.timezone,
                "backup_schedules": loaded,
            },
        )

    def stop(self, wait: bool = True) -> None:
        self._registry.unregister_all()
        self._dispatcher.shutdown(wait=wait)
        if self._db_engine is not None:
            self._db_engine.dispose()
        self._started = False
        logger.info("engine_stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    # -------------------------------------------------------------------------
    # Manual triggers
    # -------------------------------------------------------------------------

    def trigger_recurring_expenses(self) -> JobRunOutcome:
        return self._dispatcher.trigger(RECURRING_EXPENSES_SCHEDULE_ID)

    def trigger_schedule(self, schedule_id: UUID) -> JobRunOutcome:
        return self._backup_schedules.trigger(schedule_id)

    def _recurring_definition(self) -> ScheduleDefinition:
        return ScheduleDefinition(
            schedule_id=RECURRING_EXPENSES_SCHEDULE_ID,
            name=RecurringExpenseGenerator.job_name,
            cron_expression=self._settings.scheduler.recurring_expense_cron,
            job=self._generator,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def dispatcher(self) -> TriggerDispatcher:
        return self._dispatcher

    @property
    def registry(self) -> ScheduleRegistry:
        return self._registry

    @property
    def generator(self) -> RecurringExpenseGenerator:
        return self._generator

    @property
    def backups(self) -> BackupOrchestrator:
        return self._backups

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._sweeper

    @property
    def backup_schedules(self) -> BackupScheduleService:
        return self._backup_schedules

    def enabled_backup_schedules(self) -> tuple[BackupSchedule, ...]:
        return self._backup_schedules.get_enabled_schedules()
