"""
ScheduleLedger -- persists last-run bookkeeping for backup schedules.

Writes ``last_run_at``, ``last_run_status`` and ``next_run_at`` on the
schedule row after every run.  ``next_run_at`` is computed in the
scheduler timezone and stored in UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from uuid import UUID
from zoneinfo import ZoneInfo

from backoffice_kernel.db.engine import SessionFactory, transaction_scope
from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.schedule import next_fire_time, parse_cron
from backoffice_batch.domain.types import RunStatus
from backoffice_batch.models.backup import BackupScheduleModel
from backoffice_batch.services.dispatcher import JobContext

logger = get_logger("batch.ledger")


def compute_next_run(
    cron_expression: str,
    after: datetime,
    tz: tzinfo,
) -> datetime:
    """Next fire time of ``cron_expression`` after ``after``, in UTC."""
    return next_fire_time(parse_cron(cron_expression), after, tz).astimezone(timezone.utc)


class ScheduleLedger:
    """Writes run outcomes onto ``system_backup_schedules`` rows."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Clock | None = None,
        timezone_name: str = "UTC",
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._tz = ZoneInfo(timezone_name)

    def record(
        self,
        context: JobContext,
        status: RunStatus,
        ran_at: datetime,
        error: str | None = None,
    ) -> None:
        next_run = None
        if context.is_enabled:
            next_run = compute_next_run(context.cron_expression, self._clock.now(), self._tz)

        with transaction_scope(self._session_factory) as session:
            model = session.get(BackupScheduleModel, UUID(context.schedule_id))
            if model is None:
                logger.warning(
                    "ledger_schedule_missing",
                    extra={"schedule_id": context.schedule_id},
                )
                return
            model.last_run_at = ran_at
            model.last_run_status = status.value
            model.next_run_at = next_run

        logger.info(
            "schedule_run_recorded",
            extra={
                "schedule_id": context.schedule_id,
                "status": status.value,
                "next_run_at": next_run,
                "error": error,
            },
        )
