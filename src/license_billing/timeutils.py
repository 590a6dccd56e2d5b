"""
Timezone-aware datetime helpers

All billing timestamps are handled in UTC. SQLite drops tzinfo on the way
back from the store, so values read from it are normalised with as_utc().
"""
import calendar
from datetime import datetime, date, time, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[Union[datetime, date]]) -> Optional[datetime]:
    """Coerce a date/datetime to an aware UTC datetime (naive values are taken as UTC)"""
    if value is None:
        return None
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
