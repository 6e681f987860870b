"""
TriggerDispatcher -- runs job bodies for cron ticks and manual triggers.

Contract:
    Every run of a schedule's job body, whether fired by its timer or by an
    operator's "run now", goes through ``TriggerDispatcher.run()``.  That
    single path owns the per-schedule overlap guard and the ledger write.

Architecture: backoffice_batch/services.  Timers (``registry.py``) call
    ``dispatch()``; operators call ``trigger()``.

Invariants enforced:
    - Two runs of the same schedule never overlap: the per-context guard is
      acquired non-blocking; a run that finds it held is a SKIPPED no-op.
    - Every accepted tick runs on its own thread, so a slow job body never
      delays ticks of other schedules.  The guard bounds the thread count
      at one per schedule.
    - A tick that arrives while its schedule is running is dropped at
      dispatch time, not queued.
    - A run always records its terminal status in the ledger before the
      guard is released.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Protocol
from uuid import uuid4

from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.exceptions import ScheduleNotFoundError
from backoffice_kernel.logging_config import LogContext, get_logger

from backoffice_batch.domain.types import RunStatus

logger = get_logger("batch.dispatcher")


JobBody = Callable[["JobContext"], int]


class RunLedger(Protocol):
    """Persists the outcome of one run of a schedule."""

    def record(
        self,
        context: JobContext,
        status: RunStatus,
        ran_at: datetime,
        error: str | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class ScheduleDefinition:
    """What the registry and dispatcher need to know about one schedule.

    ``job`` returns the number of items it processed.
    """

    schedule_id: str
    name: str
    cron_expression: str
    job: JobBody
    is_enabled: bool = True
    config: Mapping[str, Any] = field(default_factory=dict)
    ledger: RunLedger | None = None


@dataclass(frozen=True)
class JobRunOutcome:
    """Synchronous acknowledgment of one run."""

    schedule_id: str
    status: RunStatus
    processed: int
    trigger: str  # "cron" or "manual"
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0
    error: str | None = None

    @property
    def message(self) -> str:
        if self.status == RunStatus.SKIPPED:
            return "skipped: a run of this schedule is already in progress"
        if self.status == RunStatus.FAILED:
            return f"failed: {self.error}"
        return f"processed {self.processed} items"


class JobContext:
    """Per-schedule context handed to job bodies.

    Holds the current definition (config, cron expression, ledger) and the
    overlap guard.  The guard survives re-registration: re-binding a
    schedule updates the definition but keeps the same guard.
    """

    def __init__(self, definition: ScheduleDefinition):
        self._definition = definition
        self._guard = threading.Lock()

    @property
    def schedule_id(self) -> str:
        return self._definition.schedule_id

    @property
    def name(self) -> str:
        return self._definition.name

    @property
    def cron_expression(self) -> str:
        return self._definition.cron_expression

    @property
    def is_enabled(self) -> bool:
        return self._definition.is_enabled

    @property
    def config(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._definition.config))

    @property
    def definition(self) -> ScheduleDefinition:
        return self._definition

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    def update(self, definition: ScheduleDefinition) -> None:
        self._definition = definition

    def try_acquire(self) -> bool:
        return self._guard.acquire(blocking=False)

    def release(self) -> None:
        self._guard.release()


class TriggerDispatcher:
    """Runs job bodies behind a per-schedule overlap guard.

    Contract:
        - ``bind()`` creates or updates the context for a schedule.
        - ``dispatch()`` starts a cron-tick run on its own thread and
          returns immediately.
        - ``trigger()`` runs synchronously in the caller's thread and
          returns a ``JobRunOutcome``; job exceptions propagate.
        - ``shutdown()`` waits for in-flight runs to reach a terminal state.

    Non-goals:
        - Does NOT own timers -- that is the ScheduleRegistry's job.
        - NOT a distributed lock; the guard is per process.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._contexts: dict[str, JobContext] = {}
        self._lock = threading.Lock()
        self._workers: set[threading.Thread] = set()
        self._closed = False

    # -------------------------------------------------------------------------
    # Contexts
    # -------------------------------------------------------------------------

    def bind(self, definition: ScheduleDefinition) -> JobContext:
        """Create the context for a schedule, or update the existing one."""
        with self._lock:
            context = self._contexts.get(definition.schedule_id)
            if context is None:
                context = JobContext(definition)
                self._contexts[definition.schedule_id] = context
            else:
                context.update(definition)
            return context

    def release(self, schedule_id: str) -> None:
        """Forget a schedule.  An in-flight run keeps its own context."""
        with self._lock:
            self._contexts.pop(schedule_id, None)

    def context(self, schedule_id: str) -> JobContext:
        """Raises ScheduleNotFoundError if the schedule was never bound."""
        with self._lock:
            try:
                return self._contexts[schedule_id]
            except KeyError:
                raise ScheduleNotFoundError(schedule_id) from None

    def is_running(self, schedule_id: str) -> bool:
        with self._lock:
            context = self._contexts.get(schedule_id)
        return context is not None and context.is_running

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def dispatch(self, schedule_id: str) -> Future | None:
        """Start a cron-tick run.  Never blocks on the job body.

        Returns a Future resolving to the run's JobRunOutcome (None if the
        job body raised), an already-resolved SKIPPED outcome when the
        schedule is still running, or None for unknown schedules and after
        ``shutdown()``.
        """
        try:
            context = self.context(schedule_id)
        except ScheduleNotFoundError:
            logger.warning("tick_for_unknown_schedule", extra={"schedule_id": schedule_id})
            return None

        future: Future = Future()
        if context.is_running:
            future.set_result(self._skipped(context, "cron"))
            return future

        worker = threading.Thread(
            target=self._run_tick,
            args=(context, future),
            name=f"backoffice-job-{schedule_id}",
            daemon=True,
        )
        with self._lock:
            if self._closed:
                logger.warning("tick_after_shutdown", extra={"schedule_id": schedule_id})
                return None
            self._workers.add(worker)
        worker.start()
        return future

    def trigger(self, schedule_id: str) -> JobRunOutcome:
        """Manual "run now" -- same job body, same guard as a cron tick."""
        return self.run(self.context(schedule_id), trigger="manual")

    def shutdown(self, wait: bool = True) -> None:
        """Refuse further ticks; with ``wait``, join the runs in flight."""
        with self._lock:
            self._closed = True
            workers = list(self._workers)
        if wait:
            for worker in workers:
                worker.join()
        logger.info("dispatcher_stopped", extra={"waited": wait})

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, context: JobContext, trigger: str = "manual") -> JobRunOutcome:
        """Run the job body once under the overlap guard.

        Raises whatever the job body raises, after recording FAILED.
        """
        if not context.try_acquire():
            return self._skipped(context, trigger)

        try:
            with LogContext.bind(schedule_id=context.schedule_id, run_id=uuid4().hex):
                return self._run_guarded(context, trigger)
        finally:
            context.release()

    def _run_guarded(self, context: JobContext, trigger: str) -> JobRunOutcome:
        start = time.monotonic()
        started_at = self._clock.now()
        logger.info(
            "job_run_started",
            extra={"job_name": context.name, "trigger": trigger},
        )

        try:
            processed = context.definition.job(context)
        except Exception as exc:
            completed_at = self._clock.now()
            self._record(context, RunStatus.FAILED, completed_at, str(exc))
            logger.exception(
                "job_run_failed",
                extra={"job_name": context.name, "trigger": trigger},
            )
            raise

        completed_at = self._clock.now()
        self._record(context, RunStatus.COMPLETED, completed_at, None)
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "job_run_completed",
            extra={
                "job_name": context.name,
                "trigger": trigger,
                "processed": processed,
                "duration_ms": duration_ms,
            },
        )
        return JobRunOutcome(
            schedule_id=context.schedule_id,
            status=RunStatus.COMPLETED,
            processed=processed,
            trigger=trigger,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
        )

    def _skipped(self, context: JobContext, trigger: str) -> JobRunOutcome:
        now = self._clock.now()
        logger.warning(
            "job_overlap_skipped",
            extra={"schedule_id": context.schedule_id, "trigger": trigger},
        )
        return JobRunOutcome(
            schedule_id=context.schedule_id,
            status=RunStatus.SKIPPED,
            processed=0,
            trigger=trigger,
            started_at=now,
            completed_at=now,
        )

    def _run_tick(self, context: JobContext, future: Future) -> None:
        future.set_running_or_notify_cancel()
        try:
            future.set_result(self._run_from_tick(context))
        finally:
            with self._lock:
                self._workers.discard(threading.current_thread())

    def _run_from_tick(self, context: JobContext) -> JobRunOutcome | None:
        try:
            return self.run(context, trigger="cron")
        except Exception:
            # Already recorded and logged by run()
            return None

    def _record(
        self,
        context: JobContext,
        status: RunStatus,
        ran_at: datetime,
        error: str | None,
    ) -> None:
        ledger = context.definition.ledger
        if ledger is None:
            return
        try:
            ledger.record(context, status, ran_at, error)
        except Exception:
            logger.exception(
                "ledger_write_failed",
                extra={"schedule_id": context.schedule_id, "status": status.value},
            )
