"""Interval arithmetic and due-date helpers."""

from recurring_ledger.scheduling.interval import (
    COMMON_INTERVALS,
    IntervalOption,
    billing_cycle_window,
    days_in_month,
    days_until,
    due_description,
    future_occurrences,
    interval_display_text,
    interval_option,
    interval_short_text,
    is_due,
    next_occurrence,
    validate_interval,
)

__all__ = [
    "COMMON_INTERVALS",
    "IntervalOption",
    "billing_cycle_window",
    "days_in_month",
    "days_until",
    "due_description",
    "future_occurrences",
    "interval_display_text",
    "interval_option",
    "interval_short_text",
    "is_due",
    "next_occurrence",
    "validate_interval",
]
