"""Merchant sweep-day evaluation."""

from __future__ import annotations

import calendar
from datetime import date
from typing import Protocol


class SweepSchedule(Protocol):
    def is_due(self, sweep_day: int | None, today: date) -> bool:
        ...


class DayOfMonthSchedule:
    """``sweep_day`` is a day of month; ``-1`` means the last day.

    Days past the end of a short month (e.g. 31 in April) sweep on the last day.
    """

    def is_due(self, sweep_day: int | None, today: date) -> bool:
        if sweep_day is None or sweep_day == 0:
            return False
        last_day = calendar.monthrange(today.year, today.month)[1]
        if sweep_day == -1:
            return today.day == last_day
        if sweep_day < 0:
            return False
        return today.day == min(sweep_day, last_day)


__all__ = ["DayOfMonthSchedule", "SweepSchedule"]
