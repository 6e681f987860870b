"""
ScheduleRegistry -- cron timers for every active schedule.

Contract:
    ``register()`` validates a cron expression and starts one timer per
    schedule; each timer hands its ticks to the ``TriggerDispatcher``.
    ``unregister()`` stops the timer.  ``reschedule()`` is unregister
    followed by register-if-enabled.

Architecture: backoffice_batch/services.  Uses backoffice_batch.domain.schedule
    for pure cron evaluation and backoffice_batch.services.dispatcher for runs.

Invariants enforced:
    - At most one timer per schedule id; registering again replaces it.
    - Timers evaluate cron in the registry's timezone.
    - Stopping a timer never cancels a run already in flight.

Failure modes:
    - InvalidScheduleError from ``register()`` for a malformed expression;
      no timer is started and any previous timer is left untouched.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.exceptions import InvalidScheduleError
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.schedule import CronSpec, next_fire_time, parse_cron
from backoffice_batch.services.dispatcher import ScheduleDefinition, TriggerDispatcher

logger = get_logger("batch.registry")


class CronTimer:
    """Daemon thread that calls ``on_tick(schedule_id)`` at each cron match."""

    def __init__(
        self,
        schedule_id: str,
        spec: CronSpec,
        tz: tzinfo,
        on_tick: Callable[[str], object],
        clock: Clock,
    ):
        self.schedule_id = schedule_id
        self._spec = spec
        self._tz = tz
        self._on_tick = on_tick
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_fire_at: datetime | None = None
        self.next_fire_at: datetime | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"cron-{self.schedule_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Signal stop.  Joins only when ``timeout`` is given."""
        self._stop_event.set()
        if timeout is not None and self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            now = _as_aware(self._clock.now())
            # Never compute from before the last fire: Event.wait may wake early.
            after = now if self._last_fire_at is None else max(now, self._last_fire_at)
            try:
                fire_at = next_fire_time(self._spec, after, self._tz)
            except InvalidScheduleError:
                logger.exception("timer_no_fire_time", extra={"schedule_id": self.schedule_id})
                return
            self.next_fire_at = fire_at

            delay = (fire_at - now).total_seconds()
            if self._stop_event.wait(timeout=max(delay, 0.0)):
                break

            self._last_fire_at = fire_at
            try:
                self._on_tick(self.schedule_id)
            except Exception:
                logger.exception("timer_tick_failed", extra={"schedule_id": self.schedule_id})


class ScheduleRegistry:
    """Owns one CronTimer per active schedule.

    Non-goals:
        - Does NOT persist anything; callers keep the schedule table and the
          registry in step.
        - NOT a distributed scheduler (no leader election).
    """

    def __init__(
        self,
        dispatcher: TriggerDispatcher,
        timezone_name: str = "UTC",
        clock: Clock | None = None,
    ):
        self._dispatcher = dispatcher
        self._tz: tzinfo = ZoneInfo(timezone_name)
        self._clock = clock or SystemClock()
        self._timers: dict[str, CronTimer] = {}
        self._lock = threading.Lock()

    @property
    def timezone(self) -> tzinfo:
        return self._tz

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def register(self, definition: ScheduleDefinition) -> CronTimer:
        """Start (or replace) the timer for ``definition``.

        Raises:
            InvalidScheduleError: If the cron expression is malformed.
        """
        try:
            spec = parse_cron(definition.cron_expression)
        except InvalidScheduleError as exc:
            raise InvalidScheduleError(
                definition.cron_expression, exc.reason, schedule_id=definition.schedule_id,
            ) from None

        with self._lock:
            previous = self._timers.pop(definition.schedule_id, None)
            if previous is not None:
                previous.stop()
            self._dispatcher.bind(definition)
            timer = CronTimer(
                definition.schedule_id,
                spec,
                self._tz,
                self._dispatcher.dispatch,
                self._clock,
            )
            self._timers[definition.schedule_id] = timer
            timer.start()

        logger.info(
            "schedule_registered",
            extra={
                "schedule_id": definition.schedule_id,
                "job_name": definition.name,
                "cron_expression": definition.cron_expression,
                "replaced": previous is not None,
            },
        )
        return timer

    def unregister(self, schedule_id: str) -> bool:
        """Stop the timer.  Returns False if none was registered."""
        with self._lock:
            timer = self._timers.pop(schedule_id, None)
        if timer is None:
            return False
        timer.stop()
        logger.info("schedule_unregistered", extra={"schedule_id": schedule_id})
        return True

    def reschedule(self, definition: ScheduleDefinition) -> CronTimer | None:
        """Apply a changed definition: unregister, then register if enabled.

        A disabled definition stays bound to the dispatcher so manual
        triggers keep working.
        """
        if definition.is_enabled:
            parse_cron(definition.cron_expression)
        self.unregister(definition.schedule_id)
        if not definition.is_enabled:
            self._dispatcher.bind(definition)
            return None
        return self.register(definition)

    def unregister_all(self, timeout: float | None = None) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.stop(timeout=timeout)
        logger.info("registry_stopped", extra={"timers": len(timers)})

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_active(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._timers))

    def is_registered(self, schedule_id: str) -> bool:
        with self._lock:
            return schedule_id in self._timers

    def next_fire_at(self, schedule_id: str) -> datetime | None:
        """Next tick of a registered schedule, or None if unregistered."""
        with self._lock:
            timer = self._timers.get(schedule_id)
        if timer is None:
            return None
        definition = self._dispatcher.context(schedule_id).definition
        return next_fire_time(parse_cron(definition.cron_expression), self._clock.now(), self._tz)

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
