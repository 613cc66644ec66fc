from __future__ import annotations

import calendar
import datetime
import re
from typing import List, Optional, Tuple

from errors import InvalidMonth

MONTH_PATTERN = re.compile(r"^(?P<year>\d{4})-(?P<month>\d{2})$")
WEEKDAY_TOKENS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def parse_month(value: Optional[str]) -> Tuple[int, int]:
    """Return ``(year, month)`` for a ``YYYY-MM`` identifier."""
    if not isinstance(value, str):
        raise InvalidMonth(f"Month must be a 'YYYY-MM' string, got {value!r}.")
    match = MONTH_PATTERN.match(value.strip())
    if not match:
        raise InvalidMonth(f"Month must look like 'YYYY-MM', got {value!r}.")
    year = int(match.group("year"))
    month = int(match.group("month"))
    if year < 1 or not 1 <= month <= 12:
        raise InvalidMonth(f"{value!r} is not a calendar month.")
    return year, month


def format_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def current_month(today: Optional[datetime.date] = None) -> str:
    base = today or datetime.date.today()
    return format_month(base.year, base.month)


def month_bounds(year: int, month: int) -> Tuple[datetime.date, datetime.date]:
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, 1), datetime.date(year, month, last_day)


def month_days(year: int, month: int) -> List[datetime.date]:
    start, end = month_bounds(year, month)
    return [start + datetime.timedelta(days=offset) for offset in range((end - start).days + 1)]


def sunday_weekday(day: datetime.date) -> int:
    """Weekday index with Sunday=0 .. Saturday=6."""
    return (day.weekday() + 1) % 7
