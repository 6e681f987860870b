"""
RecurringExpenseGenerator -- materializes due recurring expense templates.

Contract:
    ``process_due()`` selects every template due on or before "today" (in
    the scheduler timezone) and, for each one, inserts an expense instance
    and advances the template's ``next_occurrence`` -- in ONE transaction
    per template.

Architecture: backoffice_batch/services.  Uses backoffice_batch.domain.recurrence
    for pure date arithmetic and backoffice_batch.models.expense for storage.

Invariants enforced:
    - Instance insert and cursor advance commit together or not at all, so
      a template is never materialized twice for the same occurrence.
    - One template's failure never rolls back another template's work.
    - The due check is repeated under a row lock inside the item's own
      transaction; a template that stopped being due is SKIPPED.
    - ``next_occurrence`` becomes NULL once the next candidate falls after
      ``recurrence_end_date``.

Failure modes:
    - Failure of the due-template selection propagates (nothing was done).
    - UnknownFrequencyError per template: logged as corrupt configuration,
      counted FAILED, the template is left untouched.
    - Any other per-template error: wrapped in TransientItemError, counted
      FAILED, retried on the next run.
"""

from __future__ import annotations

import time
from datetime import date
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice_kernel.db.engine import SessionFactory, read_scope, transaction_scope
from backoffice_kernel.domain.clock import Clock, SystemClock
from backoffice_kernel.exceptions import TransientItemError, UnknownFrequencyError
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.recurrence import advance_occurrence, parse_frequency
from backoffice_batch.domain.types import (
    BatchRunResult,
    ExpenseStatus,
    ItemResult,
    ItemStatus,
)
from backoffice_batch.models.expense import ExpenseModel
from backoffice_batch.services.dispatcher import JobContext

logger = get_logger("batch.recurring")

RECURRING_EXPENSES_SCHEDULE_ID = "recurring-expenses"

AUTO_GENERATED_SUFFIX = " (Auto-generated)"


class RecurringExpenseGenerator:
    """Generates expense instances from due recurring templates.

    Instances copy the template's monetary and classification fields, are
    dated on the occurrence they materialize, start APPROVED, and point back
    at the template through ``parent_expense_id``.

    With ``catch_up_missed`` a template whose cursor lags several periods
    behind is materialized for every missed occurrence up to today in one
    transaction; without it, one run advances the cursor exactly one period.
    """

    job_name = "recurring_expenses"

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        timezone_name: str = "UTC",
        catch_up_missed: bool = False,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or uuid4()
        self._tz = ZoneInfo(timezone_name)
        self._catch_up_missed = catch_up_missed

    def __call__(self, context: JobContext) -> int:
        """Job body for the scheduler: returns the number of templates processed."""
        return self.process_due().succeeded

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def today(self) -> date:
        return self._clock.today(self._tz)

    def select_due(self, as_of: date) -> tuple[UUID, ...]:
        """Ids of templates due on ``as_of``, oldest occurrence first."""
        with read_scope(self._session_factory) as session:
            rows = session.execute(
                select(ExpenseModel.id)
                .where(
                    ExpenseModel.is_recurring == True,  # noqa: E712
                    ExpenseModel.parent_expense_id.is_(None),
                    ExpenseModel.status != ExpenseStatus.REJECTED.value,
                    ExpenseModel.next_occurrence.is_not(None),
                    ExpenseModel.next_occurrence <= as_of,
                    (ExpenseModel.recurrence_end_date.is_(None))
                    | (ExpenseModel.recurrence_end_date >= as_of),
                )
                .order_by(ExpenseModel.next_occurrence, ExpenseModel.id)
            ).scalars().all()
        return tuple(rows)

    def process_due(self, as_of: date | None = None) -> BatchRunResult:
        """Materialize every due template.  Never raises for per-item failures."""
        start_time = time.monotonic()
        started_at = self._clock.now()
        today = as_of or self.today()

        template_ids = self.select_due(today)
        logger.info(
            "recurring_run_started",
            extra={"as_of": today, "due_templates": len(template_ids)},
        )

        succeeded = 0
        failed = 0
        skipped = 0
        item_results: list[ItemResult] = []

        for template_id in template_ids:
            item_start = time.monotonic()
            item_key = str(template_id)
            try:
                result_data = self._generate_for_template(template_id, today)
            except UnknownFrequencyError as exc:
                failed += 1
                logger.error(
                    "recurring_template_corrupt",
                    exc_info=True,
                    extra={
                        "template_id": item_key,
                        "frequency": exc.frequency,
                        "corrupt_configuration": True,
                    },
                )
                item_results.append(ItemResult(
                    item_key=item_key,
                    status=ItemStatus.FAILED,
                    error_code=exc.code,
                    error_message=str(exc),
                    duration_ms=int((time.monotonic() - item_start) * 1000),
                ))
                continue
            except TransientItemError as exc:
                failed += 1
                logger.warning(
                    "recurring_instance_failed",
                    exc_info=True,
                    extra={"template_id": item_key, "reason": exc.reason},
                )
                item_results.append(ItemResult(
                    item_key=item_key,
                    status=ItemStatus.FAILED,
                    error_code=exc.code,
                    error_message=str(exc),
                    duration_ms=int((time.monotonic() - item_start) * 1000),
                ))
                continue

            duration_ms = int((time.monotonic() - item_start) * 1000)
            if result_data is None:
                skipped += 1
                item_results.append(ItemResult(
                    item_key=item_key,
                    status=ItemStatus.SKIPPED,
                    duration_ms=duration_ms,
                ))
            else:
                succeeded += 1
                item_results.append(ItemResult(
                    item_key=item_key,
                    status=ItemStatus.SUCCEEDED,
                    result_data=result_data,
                    duration_ms=duration_ms,
                ))

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "recurring_run_completed",
            extra={
                "as_of": today,
                "total_items": len(template_ids),
                "succeeded": succeeded,
                "failed": failed,
                "skipped": skipped,
                "duration_ms": duration_ms,
            },
        )

        return BatchRunResult(
            job_name=self.job_name,
            total_items=len(template_ids),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            item_results=tuple(item_results),
            started_at=started_at,
            completed_at=self._clock.now(),
            duration_ms=duration_ms,
        )

    # -------------------------------------------------------------------------
    # Per-template unit of work
    # -------------------------------------------------------------------------

    def _generate_for_template(
        self,
        template_id: UUID,
        today: date,
    ) -> dict[str, Any] | None:
        try:
            with transaction_scope(self._session_factory) as session:
                return self._generate_in_session(session, template_id, today)
        except UnknownFrequencyError:
            raise
        except Exception as exc:
            raise TransientItemError(str(template_id), str(exc)) from exc

    def _generate_in_session(
        self,
        session: Session,
        template_id: UUID,
        today: date,
    ) -> dict[str, Any] | None:
        template = session.execute(
            select(ExpenseModel)
            .where(ExpenseModel.id == template_id)
            .with_for_update()
        ).scalar_one_or_none()

        if template is None or not _is_due(template, today):
            logger.info("recurring_template_no_longer_due", extra={"template_id": str(template_id)})
            return None

        frequency = parse_frequency(template.recurrence_frequency, str(template.id))
        anchor_day = (
            template.recurrence_start_date.day
            if template.recurrence_start_date is not None
            else None
        )

        instance_ids: list[str] = []
        occurrence = template.next_occurrence
        while True:
            instance = self._build_instance(template, occurrence)
            session.add(instance)
            instance_ids.append(str(instance.id))

            candidate = advance_occurrence(occurrence, frequency, anchor_day)
            end_date = template.recurrence_end_date
            if end_date is not None and candidate > end_date:
                template.next_occurrence = None
                break
            template.next_occurrence = candidate
            if not self._catch_up_missed or candidate > today:
                break
            occurrence = candidate

        template.updated_by_id = self._actor_id
        session.flush()

        logger.info(
            "recurring_instance_created",
            extra={
                "template_id": str(template.id),
                "instances": len(instance_ids),
                "next_occurrence": template.next_occurrence,
            },
        )

        return {
            "instance_ids": instance_ids,
            "next_occurrence": (
                template.next_occurrence.isoformat()
                if template.next_occurrence is not None
                else None
            ),
            "ended": template.next_occurrence is None,
        }

    def _build_instance(self, template: ExpenseModel, occurrence: date) -> ExpenseModel:
        return ExpenseModel(
            id=uuid4(),
            user_id=template.user_id,
            project_id=template.project_id,
            category=template.category,
            description=f"{template.description}{AUTO_GENERATED_SUFFIX}",
            amount=template.amount,
            net_amount=template.net_amount,
            tax_rate=template.tax_rate,
            tax_amount=template.tax_amount,
            currency=template.currency,
            expense_date=occurrence,
            is_billable=template.is_billable,
            is_reimbursable=template.is_reimbursable,
            status=ExpenseStatus.APPROVED.value,
            tags=list(template.tags) if template.tags else None,
            notes=template.notes,
            is_recurring=False,
            parent_expense_id=template.id,
            created_by_id=self._actor_id,
        )


def _is_due(template: ExpenseModel, today: date) -> bool:
    """Same predicate as ``select_due``, evaluated on a locked row."""
    return (
        template.is_recurring
        and template.parent_expense_id is None
        and template.status != ExpenseStatus.REJECTED.value
        and template.next_occurrence is not None
        and template.next_occurrence <= today
        and (
            template.recurrence_end_date is None
            or template.recurrence_end_date >= today
        )
    )
