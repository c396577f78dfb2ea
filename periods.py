from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings


class Granularity(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


@dataclass(frozen=True)
class Window:
    granularity: Granularity
    start: date
    end: date


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def bucket_key(day: date, granularity: Granularity) -> str:
    if granularity == Granularity.daily:
        return day.isoformat()
    if granularity == Granularity.weekly:
        return week_start(day).isoformat()
    if granularity == Granularity.monthly:
        return f"{day.year:04d}-{day.month:02d}"
    raise ValueError(f"Unknown granularity: {granularity!r}")


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += date.resolution


def bucket_keys(start: date, end: date, granularity: Granularity) -> list[str]:
    keys: dict[str, None] = {}
    for day in iter_days(start, end):
        keys.setdefault(bucket_key(day, granularity), None)
    return sorted(keys)


def _months_back(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) - count
    year = month_index // 12
    month = (month_index % 12) + 1
    day = d.day
    while True:
        try:
            return date(year, month, day)
        except ValueError:
            day -= 1


def resolve_window(
    granularity: Granularity,
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> Window:
    today = today or local_today()
    if start or end:
        if not start or not end:
            raise ValueError("Custom window requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Window(granularity, start_date, end_date)

    # default look-back: 30 days, 12 weeks or 12 months
    if granularity == Granularity.daily:
        return Window(granularity, today - timedelta(days=30), today)
    if granularity == Granularity.weekly:
        return Window(granularity, today - timedelta(days=84), today)
    return Window(granularity, _months_back(today, 12), today)


def parse_month(value: str) -> tuple[int, int]:
    try:
        year_str, month_str = value.split("-", 1)
        year, month = int(year_str), int(month_str)
    except ValueError as exc:
        raise ValueError(f"Invalid month: {value!r}, expected YYYY-MM") from exc
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {value!r}, expected YYYY-MM")
    return year, month
