"""Library calendar: weekends, holidays and closed days.

Used to count the days a library was actually open between a due date and a
return date, so fines do not accrue while borrowers could not return a book.
"""
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Tuple, Union

from library_fines.config.config import Config
from library_fines.utils.dates import parse_date

DateLike = Union[date, datetime, str]


def _as_date(value: DateLike) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_date(value)


def nth_weekday_of_month(year: int, month: int, weekday: int, nth: int) -> Optional[date]:
    """Return the date of the nth `weekday` in a month (nth=-1 for the last one)."""
    if nth > 0:
        first = date(year, month, 1)
        offset = (weekday - first.weekday()) % 7
        day = first + timedelta(days=offset + 7 * (nth - 1))
        return day if day.month == month else None

    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    offset = (last.weekday() - weekday) % 7
    day = last - timedelta(days=offset + 7 * (-nth - 1))
    return day if day.month == month else None


class HolidayManager:
    """Decides whether the library is open on a given day.

    Args:
        weekend_days: Weekday numbers (Monday=0) treated as the weekend.
        fixed_holidays: (month, day, name) tuples recurring every year.
        floating_holidays: (nth, weekday, month or None, name) rules such as
            "second Saturday of every month".
        closed_days: Explicit one-off closures.
        exclude_weekends: Whether weekends count as closed days.
    """

    def __init__(self, weekend_days: Optional[Iterable[int]] = None,
                 fixed_holidays: Optional[Iterable[Tuple[int, int, str]]] = None,
                 floating_holidays: Optional[Iterable[Tuple]] = None,
                 closed_days: Optional[Iterable[DateLike]] = None,
                 exclude_weekends: Optional[bool] = None):
        self.weekend_days = frozenset(Config.WEEKEND_DAYS if weekend_days is None else weekend_days)
        self.fixed_holidays = {
            (month, day): name
            for month, day, name in (Config.FIXED_HOLIDAYS if fixed_holidays is None else fixed_holidays)
        }
        self.floating_holidays = list(
            Config.FLOATING_HOLIDAYS if floating_holidays is None else floating_holidays
        )
        days = Config.LIBRARY_CLOSED_DAYS if closed_days is None else closed_days
        self.closed_days = {d for d in (_as_date(value) for value in days) if d}
        self.exclude_weekends = Config.EXCLUDE_WEEKENDS if exclude_weekends is None else exclude_weekends

    @classmethod
    def from_config(cls, config=Config) -> 'HolidayManager':
        return cls(
            weekend_days=config.WEEKEND_DAYS,
            fixed_holidays=config.FIXED_HOLIDAYS,
            floating_holidays=config.FLOATING_HOLIDAYS,
            closed_days=config.LIBRARY_CLOSED_DAYS,
            exclude_weekends=config.EXCLUDE_WEEKENDS,
        )

    def is_weekend(self, value: DateLike) -> bool:
        day = _as_date(value)
        return day is not None and day.weekday() in self.weekend_days

    def holiday_name(self, value: DateLike) -> Optional[str]:
        """Return the holiday's name, or None when the day is not a holiday."""
        day = _as_date(value)
        if day is None:
            return None

        name = self.fixed_holidays.get((day.month, day.day))
        if name:
            return name

        for nth, weekday, month, rule_name in self.floating_holidays:
            if month is not None and month != day.month:
                continue
            if day.weekday() != weekday:
                continue
            if nth_weekday_of_month(day.year, day.month, weekday, nth) == day:
                return rule_name
        return None

    def is_holiday(self, value: DateLike) -> bool:
        return self.holiday_name(value) is not None

    def is_library_closed(self, value: DateLike) -> bool:
        day = _as_date(value)
        if day is None:
            return False
        if self.is_holiday(day):
            return True
        if self.exclude_weekends and self.is_weekend(day):
            return True
        return day in self.closed_days

    def business_days_between(self, start: DateLike, end: DateLike) -> int:
        """Count open days in [start, end). Returns 0 when start >= end."""
        start_day = _as_date(start)
        end_day = _as_date(end)
        if start_day is None or end_day is None or start_day >= end_day:
            return 0

        count = 0
        day = start_day
        while day < end_day:
            if not self.is_library_closed(day):
                count += 1
            day += timedelta(days=1)
        return count
