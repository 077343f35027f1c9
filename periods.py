from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


class Granularity(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


DEFAULT_LOOKBACK = {
    Granularity.daily: 30,
    Granularity.weekly: 12,
    Granularity.monthly: 12,
}

# Weeks are truncated to Sunday (date.weekday() == 6).
WEEK_START = 6


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: Optional[date]

    def contains(self, value: date) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass(frozen=True)
class Bucket:
    key: str
    start: date
    end: date  # exclusive


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def _as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def bucket_start(value: date, granularity: Granularity) -> date:
    value = _as_date(value)
    if granularity == Granularity.daily:
        return value
    if granularity == Granularity.weekly:
        return value - timedelta(days=(value.weekday() - WEEK_START) % 7)
    return value.replace(day=1)


def next_bucket_start(start: date, granularity: Granularity) -> date:
    if granularity == Granularity.daily:
        return start + timedelta(days=1)
    if granularity == Granularity.weekly:
        return start + timedelta(days=7)
    return add_months(start, 1)


def _format_key(start: date, granularity: Granularity) -> str:
    if granularity == Granularity.monthly:
        return f"{start.year}-{start.month}"
    return start.isoformat()


def bucket_for(value: date, granularity: Granularity) -> Bucket:
    start = bucket_start(value, granularity)
    return Bucket(
        key=_format_key(start, granularity),
        start=start,
        end=next_bucket_start(start, granularity),
    )


def bucket_key_for(value: date, granularity: Granularity) -> str:
    return _format_key(bucket_start(value, granularity), granularity)


def enumerate_buckets(
    today: date, count: int, granularity: Granularity
) -> list[Bucket]:
    """Return ``count`` consecutive buckets, oldest first, ending with the
    bucket that contains ``today``. Empty buckets are included."""
    if count < 1:
        raise ValueError("Bucket count must be at least 1")
    current = bucket_start(today, granularity)
    if granularity == Granularity.monthly:
        first = add_months(current, -(count - 1))
    else:
        step = 7 if granularity == Granularity.weekly else 1
        first = current - timedelta(days=step * (count - 1))

    buckets: list[Bucket] = []
    start = first
    for _ in range(count):
        end = next_bucket_start(start, granularity)
        buckets.append(Bucket(_format_key(start, granularity), start, end))
        start = end
    return buckets


def _parse_date(value: str, label: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value).date()
    except ValueError as exc:
        raise ValueError(f"Invalid {label}: {value}") from exc


def resolve_date_range(start: Optional[str], end: Optional[str]) -> Period:
    start_date = _parse_date(start, "start date") if start else None
    end_date = _parse_date(end, "end date") if end else None
    if start_date and end_date and start_date > end_date:
        raise ValueError("Start date must be before end date")
    if start_date is None and end_date is None:
        return Period("all", None, None)
    return Period("custom", start_date, end_date)
