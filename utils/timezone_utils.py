"""
Timezone utilities
All stored timestamps are UTC; customer-facing dates are rendered in Australian time
"""

import calendar
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Union

import pytz

logger = logging.getLogger(__name__)

DISPLAY_TIMEZONE = pytz.timezone('Australia/Brisbane')


def utc_now() -> datetime:
    """Get current UTC time"""
    return datetime.now(timezone.utc)


def to_utc(dt: Union[datetime, str, float, int, None]) -> datetime:
    """Convert various datetime formats to a timezone-aware UTC datetime"""
    if dt is None:
        return utc_now()

    if isinstance(dt, (int, float)):
        return datetime.fromtimestamp(dt, timezone.utc)

    if isinstance(dt, str):
        try:
            parsed = datetime.fromisoformat(dt.replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"⚠️ Could not parse datetime string: {dt}, using current time")
            return utc_now()
        return to_utc(parsed)

    if isinstance(dt, datetime):
        if dt.tzinfo is None:
            # Naive datetimes from the database are UTC
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    raise ValueError(f"Cannot convert {type(dt)} to UTC datetime: {dt}")


def add_days(dt: datetime, days: int) -> datetime:
    """Add days to datetime maintaining UTC"""
    return to_utc(dt) + timedelta(days=days)


def add_month(dt: datetime) -> datetime:
    """
    Add one calendar month, clamping to the last day of the target month
    (Jan 31 -> Feb 28/29)
    """
    dt = to_utc(dt)
    year = dt.year + (1 if dt.month == 12 else 0)
    month = 1 if dt.month == 12 else dt.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))


def is_expired(dt: datetime, ttl_seconds: Union[int, float]) -> bool:
    """Check if datetime is older than ttl_seconds"""
    return (utc_now() - to_utc(dt)).total_seconds() > ttl_seconds


def format_local(dt: Optional[datetime] = None, fmt: str = '%d %b %Y %H:%M %Z') -> str:
    """Format a UTC datetime in the dashboard display timezone"""
    return to_utc(dt).astimezone(DISPLAY_TIMEZONE).strftime(fmt)
