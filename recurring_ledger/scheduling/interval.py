"""
Interval Calculator

Pure date arithmetic for recurring obligations: whole-month intervals,
month-end clamping and due-date descriptions. No I/O.

DESIGN DECISION: Clamping is always measured against the ANCHOR day (the
day of month the schedule started on), not the previously clamped day.
Jan 31 -> Feb 29 -> Mar 31, never Mar 29. Stored records carry the anchor
in `anchor_day` so the chain survives across executions.
"""

import calendar
from datetime import date
from typing import Optional

from pydantic import BaseModel

from recurring_ledger.models.recurring import (
    INTERVAL_MONTHS_MAX,
    INTERVAL_MONTHS_MIN,
)


DEFAULT_OCCURRENCE_COUNT = 5


class IntervalOption(BaseModel):
    """A selectable interval with its label."""
    months: int
    label: str
    description: str


COMMON_INTERVALS: tuple[IntervalOption, ...] = (
    IntervalOption(months=1, label="Monthly", description="Every month"),
    IntervalOption(months=2, label="Every 2 months", description="Bi-monthly"),
    IntervalOption(months=3, label="Quarterly", description="Every 3 months"),
    IntervalOption(months=4, label="Every 4 months", description="Four times per year"),
    IntervalOption(months=6, label="Semi-annually", description="Twice per year"),
    IntervalOption(months=12, label="Annually", description="Once per year"),
    IntervalOption(months=24, label="Every 2 years", description="Bi-annually"),
)

_DISPLAY_TEXT = {
    1: "Monthly",
    2: "Every 2 months",
    3: "Quarterly",
    4: "Every 4 months",
    6: "Semi-annually",
    12: "Annually",
}

_SHORT_TEXT = {
    1: "Monthly",
    3: "Quarterly",
    6: "Semi-annual",
    12: "Annual",
}


def _check_interval(interval_months: int) -> None:
    if not INTERVAL_MONTHS_MIN <= interval_months <= INTERVAL_MONTHS_MAX:
        raise ValueError(
            f"Interval months must be between {INTERVAL_MONTHS_MIN} and {INTERVAL_MONTHS_MAX}"
        )


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    """The given day in year/month, clamped to the month's last day."""
    return date(year, month, min(day, days_in_month(year, month)))


def shift_months(d: date, months: int, anchor_day: Optional[int] = None) -> date:
    """
    Move d by a (possibly negative) number of months.

    The day of month is `anchor_day` (defaults to d.day), clamped to the
    length of the target month.
    """
    month = d.month - 1 + months
    year = d.year + month // 12
    month = month % 12 + 1
    return clamp_day(year, month, anchor_day or d.day)


def next_occurrence(
    current: date,
    interval_months: int,
    anchor_day: Optional[int] = None,
) -> date:
    """
    The occurrence `interval_months` after `current`.

    Raises:
        ValueError: If interval_months is outside 1-24
    """
    _check_interval(interval_months)
    return shift_months(current, interval_months, anchor_day)


def future_occurrences(
    start: date,
    interval_months: int,
    count: int = DEFAULT_OCCURRENCE_COUNT,
    anchor_day: Optional[int] = None,
) -> list[date]:
    """
    The next `count` occurrences after `start` (start itself excluded).

    Every step is clamped against the anchor day, so a short month in the
    middle of the sequence does not pull later dates forward.
    """
    _check_interval(interval_months)
    anchor = anchor_day or start.day
    return [
        shift_months(start, interval_months * step, anchor)
        for step in range(1, count + 1)
    ]


def is_due(next_occurrence_date: date, as_of: Optional[date] = None) -> bool:
    """Same-day counts as due."""
    return next_occurrence_date <= (as_of or date.today())


def days_until(next_occurrence_date: date, as_of: Optional[date] = None) -> int:
    """Negative when the occurrence is overdue."""
    return (next_occurrence_date - (as_of or date.today())).days


def due_description(next_occurrence_date: date, as_of: Optional[date] = None) -> str:
    """Human-readable due status, e.g. "Due tomorrow" or "Due in 2 weeks"."""
    days = days_until(next_occurrence_date, as_of)

    if days < 0:
        past = abs(days)
        return "Due yesterday" if past == 1 else f"Due {past} days ago"
    if days == 0:
        return "Due today"
    if days == 1:
        return "Due tomorrow"
    if days <= 6:
        return f"Due in {days} days"
    if days <= 30:
        weeks = days // 7
        return "Due in 1 week" if weeks == 1 else f"Due in {weeks} weeks"

    months = days // 30
    return "Due in 1 month" if months == 1 else f"Due in {months} months"


def validate_interval(interval_months) -> tuple[bool, Optional[str]]:
    """
    Check a raw interval value.

    Returns (is_valid, message); message is None when valid.
    """
    try:
        whole = not isinstance(interval_months, bool) and float(interval_months).is_integer()
    except (TypeError, ValueError):
        whole = False
    if not whole:
        return False, "Interval months must be a whole number"
    if float(interval_months) < INTERVAL_MONTHS_MIN:
        return False, f"Interval months must be at least {INTERVAL_MONTHS_MIN}"
    if float(interval_months) > INTERVAL_MONTHS_MAX:
        return False, f"Interval months cannot exceed {INTERVAL_MONTHS_MAX}"
    return True, None


def interval_display_text(interval_months: int) -> str:
    return _DISPLAY_TEXT.get(interval_months, f"Every {interval_months} months")


def interval_short_text(interval_months: int) -> str:
    return _SHORT_TEXT.get(interval_months, f"{interval_months}mo")


def interval_option(interval_months: int) -> IntervalOption:
    for option in COMMON_INTERVALS:
        if option.months == interval_months:
            return option
    return IntervalOption(
        months=interval_months,
        label=interval_display_text(interval_months),
        description=f"Every {interval_months} months",
    )


def billing_cycle_window(anchor_day: int, as_of: date) -> tuple[date, date]:
    """
    The billing-cycle window [start, end) that a statement on `as_of` covers.

    If as_of.day >= anchor_day the window ends on this month's anchor day,
    otherwise on last month's. The anchor is clamped to short months.
    """
    this_month_anchor = clamp_day(as_of.year, as_of.month, anchor_day)
    end_month = as_of if as_of >= this_month_anchor else shift_months(as_of.replace(day=1), -1)
    end = clamp_day(end_month.year, end_month.month, anchor_day)
    start = shift_months(end.replace(day=1), -1, anchor_day)
    return start, end
