"""
US holiday calendar used for grace-period multipliers.

One instance is created per process by the composition root and injected into
the calculator. Memoization lives on the instance, never at module level.
"""

import calendar
from datetime import date, timedelta

import structlog

logger = structlog.get_logger(__name__)

MONDAY = 0
THURSDAY = 3


def nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    """The ``n``-th ``weekday`` of a month. ``n = -1`` means the last one."""
    if n > 0:
        first = date(year, month, 1)
        offset = (weekday - first.weekday()) % 7
        return first + timedelta(days=offset + 7 * (n - 1))
    last = date(year, month, calendar.monthrange(year, month)[1])
    offset = (last.weekday() - weekday) % 7
    return last - timedelta(days=offset + 7 * (-n - 1))


class HolidayCalendar:
    """Fixed and floating-date holidays with per-day memoization."""

    def __init__(self) -> None:
        self._years: dict[int, dict[date, str]] = {}
        self._days: dict[str, bool] = {}
        self.logger = logger.bind(component="holiday_calendar")

    def holidays_for_year(self, year: int) -> dict[date, str]:
        holidays = self._years.get(year)
        if holidays is None:
            holidays = {
                date(year, 1, 1): "New Year's Day",
                nth_weekday(year, 1, MONDAY, 3): "Martin Luther King Jr. Day",
                nth_weekday(year, 2, MONDAY, 3): "Presidents Day",
                nth_weekday(year, 5, MONDAY, -1): "Memorial Day",
                date(year, 7, 4): "Independence Day",
                nth_weekday(year, 9, MONDAY, 1): "Labor Day",
                nth_weekday(year, 10, MONDAY, 2): "Columbus Day",
                date(year, 11, 11): "Veterans Day",
                nth_weekday(year, 11, THURSDAY, 4): "Thanksgiving",
                date(year, 12, 25): "Christmas Day",
            }
            self._years[year] = holidays
            self.logger.debug("holidays_computed", year=year, count=len(holidays))
        return holidays

    def is_holiday(self, day: date) -> bool:
        key = day.isoformat()
        cached = self._days.get(key)
        if cached is None:
            cached = day in self.holidays_for_year(day.year)
            self._days[key] = cached
        return cached

    def holiday_name(self, day: date) -> str | None:
        return self.holidays_for_year(day.year).get(day)

    @staticmethod
    def is_weekend(day: date) -> bool:
        return day.weekday() >= 5
