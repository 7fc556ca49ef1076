"""Subscription period arithmetic."""

from __future__ import annotations

import calendar
from datetime import date, datetime
from typing import TypeVar

D = TypeVar("D", date, datetime)

PERIOD_MONTHS: dict[str, int] = {
    "monthly": 1,
    "quarterly": 3,
    "biannual": 6,
    "annual": 12,
    "one-time": 12,
}


def add_months(value: D, months: int) -> D:
    """Shift by whole months, clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_end_date(start: D, period: str) -> D:
    """
    End of a subscription period starting at ``start``.

    Unknown periods are treated as monthly.
    """
    months = PERIOD_MONTHS.get(period.strip().lower(), 1)
    return add_months(start, months)
