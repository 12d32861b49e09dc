"""
Time and period helpers.

All timestamps inside the pipeline are naive UTC datetimes.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional, Tuple


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Half-open [start, end) datetimes for a calendar day"""
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


def week_start(day: date) -> date:
    """Monday of the week containing ``day``"""
    return day - timedelta(days=day.weekday())


def week_bounds(day: date) -> Tuple[date, date]:
    """Inclusive (monday, sunday) for the week containing ``day``"""
    start = week_start(day)
    return start, start + timedelta(days=6)


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    """Inclusive (first, last) day of a calendar month"""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def previous_month(year: int, month: int) -> Tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every day in the inclusive range"""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def iter_weeks(start: date, end: date) -> Iterator[date]:
    """Yield the Monday of every week overlapping the inclusive range"""
    current = week_start(start)
    while current <= end:
        yield current
        current += timedelta(weeks=1)


def iter_months(start: date, end: date) -> Iterator[Tuple[int, int]]:
    """Yield (year, month) for every month overlapping the inclusive range"""
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        month += 1
        if month > 12:
            year, month = year + 1, 1


def growth_pct(current: float, previous: Optional[float]) -> Optional[float]:
    """
    Period-over-period growth percentage.

    Returns None when there is no previous value or it is zero, so that a
    brand new dimension never reports an infinite growth.
    """
    if previous is None or previous == 0:
        return None
    return round((current - previous) / previous * 100, 2)
