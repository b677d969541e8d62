"""
Time rules service.
UTC normalisation, minute arithmetic and business-timezone dates.
"""
import math
from datetime import date, datetime
from typing import Optional

import pytz

from ..config import settings


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to timezone-aware UTC.

    Naive values are taken to already be UTC (SQLite drops the offset on storage).

    Args:
        dt: Datetime (timezone-aware or naive), or None

    Returns:
        UTC datetime (timezone-aware), or None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def minutes_between(start: datetime, end: datetime) -> int:
    """
    Whole minutes from start to end, rounding half up.

    Args:
        start: Interval start
        end: Interval end

    Returns:
        Rounded minute count (negative when end precedes start)
    """
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return int(math.floor(seconds / 60 + 0.5))


def billable_minutes(total_minutes: Optional[int], break_minutes: Optional[int]) -> Optional[int]:
    """Worked minutes minus break minutes, floored at zero. None until a total exists."""
    if total_minutes is None:
        return None
    return max(0, int(total_minutes) - int(break_minutes or 0))


def local_today(timezone_str: Optional[str] = None, now: Optional[datetime] = None) -> date:
    """
    Today's date in the business timezone.

    Args:
        timezone_str: Timezone string (default from settings)
        now: Reference instant (default current time)

    Returns:
        Local calendar date
    """
    return utc_to_local(now or utcnow(), timezone_str or settings.tz_default).date()


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (timezone-aware or naive)
        timezone_str: Timezone string (e.g., "Australia/Sydney")

    Returns:
        Local datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return ensure_utc(utc_datetime)
    return ensure_utc(utc_datetime).astimezone(tz)


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert a naive local datetime to UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "Australia/Sydney")

    Returns:
        UTC datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return local_datetime.replace(tzinfo=pytz.UTC)
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC)
