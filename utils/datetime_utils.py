"""
Timezone-aware datetime utilities for the journey engine.

All functions return timezone-aware datetimes unless their name says otherwise.
The database stores naive UTC values; ``to_db_time`` and ``ensure_utc`` convert
between the two representations.
"""

from datetime import datetime, timezone, time
from typing import Optional, Tuple
import pytz


def utc_now() -> datetime:
    """
    Get the current UTC time as a timezone-aware datetime object.

    Example:
        >>> now = utc_now()
        >>> print(now.tzinfo)  # UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime object is timezone-aware and in UTC.

    Naive values (which is what the database hands back) are assumed to be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    elif dt.tzinfo != timezone.utc:
        return dt.astimezone(timezone.utc)
    return dt


def to_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert any datetime to the naive UTC form stored in DateTime columns"""
    if dt is None:
        return None
    return ensure_utc(dt).replace(tzinfo=None)


def get_timezone(tz_name: Optional[str]):
    """
    Resolve a timezone name, falling back to UTC for empty or unknown names.

    Example:
        >>> get_timezone('America/New_York').zone
        'America/New_York'
    """
    if not tz_name:
        return pytz.UTC
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def utc_to_local(dt: datetime, local_tz: str = 'UTC') -> datetime:
    """
    Convert a UTC datetime to a local timezone.

    Args:
        dt: UTC datetime (naive values are assumed UTC)
        local_tz: Target timezone name
    """
    return ensure_utc(dt).astimezone(get_timezone(local_tz))


def local_to_utc(dt: datetime, local_tz: str = 'UTC') -> datetime:
    """
    Convert a local datetime to UTC.

    Args:
        dt: Local datetime (may be naive or timezone-aware)
        local_tz: Source timezone name if dt is naive
    """
    if dt.tzinfo is None:
        local_dt = get_timezone(local_tz).localize(dt)
        return local_dt.astimezone(timezone.utc)
    return dt.astimezone(timezone.utc)


def local_wall_time_to_utc(day: datetime, hour: int, minute: int, local_tz: str) -> datetime:
    """
    Build the UTC instant for ``hour:minute`` on the local calendar day of ``day``.

    ``day`` must already be expressed in ``local_tz``; only its date is used.
    """
    naive = datetime(day.year, day.month, day.day, hour, minute)
    return local_to_utc(naive, local_tz)


def parse_hhmm(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """
    Parse an ``HH:mm`` wall-clock string.

    Returns:
        (hour, minute) or None when the value is missing or malformed

    Example:
        >>> parse_hhmm('09:30')
        (9, 30)
    """
    if not value or not isinstance(value, str):
        return None
    parts = value.strip().split(':')
    if len(parts) < 2:
        return None
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour, minute


def start_of_local_day(dt: datetime, local_tz: str) -> datetime:
    """UTC instant of local midnight for the day containing ``dt``"""
    local = utc_to_local(dt, local_tz)
    return local_to_utc(datetime.combine(local.date(), time(0, 0)), local_tz)
