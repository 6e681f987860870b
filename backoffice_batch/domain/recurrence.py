"""
Recurrence arithmetic for recurring expense templates.

Contract:
    ``advance_occurrence(current, frequency, anchor_day)`` is PURE and
    returns the next occurrence one period after ``current``.

Month-end policy:
    Adding months never spills into the following month: the day is
    clamped to the last day of the target month (Jan 31 + 1 month =
    Feb 29 in 2024, Feb 28 otherwise; Mar 31 + 1 month = Apr 30).

    A template's anchor day is the day-of-month of its
    ``recurrence_start_date``.  When ``current`` sits on a month end
    because an earlier step was clamped (its day is below the anchor), the
    next step returns to the anchor day where the target month allows it:
    Jan 31 -> Feb 29 -> Mar 31 -> Apr 30 -> May 31.

Failure modes:
    - UnknownFrequencyError for any frequency outside monthly/quarterly/
      yearly.  This signals corrupt configuration, never a stop condition.
"""

from __future__ import annotations

import calendar
from datetime import date

from backoffice_kernel.exceptions import UnknownFrequencyError

from backoffice_batch.domain.types import RecurrenceFrequency


_MONTHS_PER_PERIOD: dict[RecurrenceFrequency, int] = {
    RecurrenceFrequency.MONTHLY: 1,
    RecurrenceFrequency.QUARTERLY: 3,
    RecurrenceFrequency.YEARLY: 12,
}


def parse_frequency(value: object, template_id: str | None = None) -> RecurrenceFrequency:
    """Coerce a stored frequency value to the enum.

    Raises:
        UnknownFrequencyError: If ``value`` is not a known frequency.
    """
    if isinstance(value, RecurrenceFrequency):
        return value
    try:
        return RecurrenceFrequency(value)
    except ValueError:
        raise UnknownFrequencyError(value, template_id) from None


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(current: date, months: int, day: int | None = None) -> date:
    """Add ``months`` calendar months, clamping ``day`` to the target month."""
    target_day = current.day if day is None else day
    index = current.year * 12 + (current.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(target_day, days_in_month(year, month)))


def advance_occurrence(
    current: date,
    frequency: RecurrenceFrequency | str,
    anchor_day: int | None = None,
) -> date:
    """Return the occurrence one period after ``current``.

    Raises:
        UnknownFrequencyError: If ``frequency`` is not recognized.
    """
    months = _MONTHS_PER_PERIOD[parse_frequency(frequency)]

    day = current.day
    at_month_end = day == days_in_month(current.year, current.month)
    if anchor_day is not None and at_month_end and anchor_day > day:
        day = anchor_day

    return add_months(current, months, day)
