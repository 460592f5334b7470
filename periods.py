from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = date(year, month, 1)
    end = date(year, month, days_in_month(year, month))
    return Period(f"{year:04d}-{month:02d}", start, end)


def custom_period(start: date, end: date) -> Period:
    if start > end:
        raise ValueError("Start date must be before end date")
    return Period("custom", start, end)


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day or base.day
    return date(year, month, min(day, days_in_month(year, month)))


def trailing_months(year: int, month: int, count: int) -> list[tuple[int, int]]:
    """Return `count` (year, month) pairs ending at the given month, oldest first."""
    anchor = date(year, month, 1)
    months = []
    for offset in range(count - 1, -1, -1):
        d = add_months(anchor, -offset)
        months.append((d.year, d.month))
    return months
