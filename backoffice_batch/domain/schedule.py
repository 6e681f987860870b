"""
Pure cron evaluation functions.

Contract:
    ``parse_cron()``, ``matches_cron()`` and ``next_fire_time()`` are PURE --
    no I/O, no side effects, no clock reads.  Timers and the schedule ledger
    feed them the current instant.

Architecture: backoffice_batch/domain.  ZERO I/O.

Cron dialect:
    Standard 5 fields ``minute hour day_of_month month day_of_week``.
    Supports ``*``, values, ranges (1-5), steps (*/5, 1-10/2), lists,
    month names (jan..dec) and weekday names (sun..sat).  Weekday 7 is
    Sunday.  When both day fields are restricted, a day matches if EITHER
    matches (Vixie cron semantics).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo

from backoffice_kernel.exceptions import InvalidScheduleError


_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun",
         "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1,
    )
}
_WEEKDAY_NAMES = {
    name: number
    for number, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))
}

# Upper bound on the search for the next matching minute (~4 years covers
# Feb 29 schedules).
_MAX_SEARCH_DAYS = 366 * 4 + 1


# =============================================================================
# CronSpec (lightweight cron parser)
# =============================================================================


@dataclass(frozen=True)
class CronSpec:
    """Parsed cron expression (minute hour day_of_month month day_of_week).

    Each field is a frozenset of valid integer values.  The ``*_restricted``
    flags record whether the day fields were given as ``*``.
    """

    minutes: frozenset[int] = field(default_factory=lambda: frozenset(range(60)))
    hours: frozenset[int] = field(default_factory=lambda: frozenset(range(24)))
    days_of_month: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 32)))
    months: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 13)))
    days_of_week: frozenset[int] = field(default_factory=lambda: frozenset(range(7)))
    dom_restricted: bool = False
    dow_restricted: bool = False


def _parse_value(token: str, names: dict[str, int] | None) -> int:
    token = token.strip().lower()
    if names and token in names:
        return names[token]
    if not token.isdigit():
        raise ValueError(f"Not a number: '{token}'")
    return int(token)


def _parse_cron_field(
    field_str: str,
    min_val: int,
    max_val: int,
    names: dict[str, int] | None = None,
) -> frozenset[int]:
    """Parse a single cron field into a frozenset of valid values.

    Supports:
        * -- all values
        N -- single value
        N-M -- range
        */N -- step from min
        N-M/S -- range with step
        N/S -- from N to max with step

    Raises:
        ValueError: If the field is syntactically invalid or values out of range.
    """
    values: set[int] = set()

    for part in field_str.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"Empty list element in '{field_str}'")

        step = 1
        has_step = "/" in part
        if has_step:
            part, step_str = part.split("/", 1)
            step = _parse_value(step_str, None)
            if step <= 0:
                raise ValueError(f"Step must be positive: {step}")

        if part == "*":
            start, end = min_val, max_val
        elif "-" in part:
            s, e = part.split("-", 1)
            start, end = _parse_value(s, names), _parse_value(e, names)
            if start > end:
                raise ValueError(f"Range start > end: {start}-{end}")
        else:
            start = _parse_value(part, names)
            end = max_val if has_step else start

        for bound in (start, end):
            if bound < min_val or bound > max_val:
                raise ValueError(
                    f"Value {bound} outside range [{min_val}, {max_val}]"
                )

        values.update(range(start, end + 1, step))

    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """Parse a 5-field cron expression into a CronSpec.

    Format: ``minute hour day_of_month month day_of_week``

    Raises:
        InvalidScheduleError: If expression is malformed.
    """
    if not isinstance(expression, str):
        raise InvalidScheduleError(str(expression), "expression must be a string")

    parts = expression.strip().split()
    if len(parts) != 5:
        raise InvalidScheduleError(
            expression, f"expected 5 fields, got {len(parts)}",
        )

    try:
        days_of_week = _parse_cron_field(parts[4], 0, 7, _WEEKDAY_NAMES)
        # 7 is an alias for Sunday
        if 7 in days_of_week:
            days_of_week = (days_of_week - {7}) | {0}
        return CronSpec(
            minutes=_parse_cron_field(parts[0], 0, 59),
            hours=_parse_cron_field(parts[1], 0, 23),
            days_of_month=_parse_cron_field(parts[2], 1, 31),
            months=_parse_cron_field(parts[3], 1, 12, _MONTH_NAMES),
            days_of_week=frozenset(days_of_week),
            dom_restricted=parts[2] != "*",
            dow_restricted=parts[4] != "*",
        )
    except ValueError as exc:
        raise InvalidScheduleError(expression, str(exc)) from None


def is_valid_cron(expression: str) -> bool:
    try:
        parse_cron(expression)
    except InvalidScheduleError:
        return False
    return True


def _day_matches(spec: CronSpec, dt: datetime) -> bool:
    # Cron convention: 0=Sunday.  Python weekday(): 0=Monday.
    cron_dow = (dt.weekday() + 1) % 7
    dom_ok = dt.day in spec.days_of_month
    dow_ok = cron_dow in spec.days_of_week
    if spec.dom_restricted and spec.dow_restricted:
        return dom_ok or dow_ok
    return dom_ok and dow_ok


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    """Check if a wall-clock datetime matches a cron spec (pure)."""
    return (
        dt.minute in spec.minutes
        and dt.hour in spec.hours
        and dt.month in spec.months
        and _day_matches(spec, dt)
    )


# =============================================================================
# Next fire time (pure)
# =============================================================================


def next_fire_time(
    spec: CronSpec,
    after: datetime,
    tz: tzinfo = timezone.utc,
) -> datetime:
    """Find the first instant strictly after ``after`` that matches ``spec``.

    The spec is evaluated against wall-clock time in ``tz``; the result is
    timezone-aware in ``tz``.  Naive ``after`` values are taken as UTC.
    Wall-clock minutes skipped by a DST jump never fire.

    Scans day-by-day until the date matches, then minute-by-minute within
    the day (bounded iteration).

    Raises:
        InvalidScheduleError: If no match exists within the search window
            (e.g. ``0 0 31 2 *``).
    """
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local = after.astimezone(tz).replace(tzinfo=None)
    candidate = local.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = candidate + timedelta(days=_MAX_SEARCH_DAYS)

    while candidate < limit:
        if candidate.month not in spec.months or not _day_matches(spec, candidate):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if candidate.hour not in spec.hours:
            candidate = (candidate + timedelta(hours=1)).replace(minute=0)
            continue
        if candidate.minute not in spec.minutes:
            candidate += timedelta(minutes=1)
            continue

        aware = candidate.replace(tzinfo=tz)
        # Round-trip through UTC drops non-existent wall times (DST gap).
        if aware.astimezone(timezone.utc).astimezone(tz).replace(tzinfo=None) == candidate:
            return aware
        candidate += timedelta(minutes=1)

    raise InvalidScheduleError(
        _describe(spec), f"no matching time within {_MAX_SEARCH_DAYS} days",
    )


def _describe(spec: CronSpec) -> str:
    def fmt(values: frozenset[int]) -> str:
        return ",".join(str(v) for v in sorted(values))

    return " ".join(
        fmt(v) for v in (
            spec.minutes, spec.hours, spec.days_of_month,
            spec.months, spec.days_of_week,
        )
    )
