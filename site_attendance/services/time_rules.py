"""
Time rules service.
Handles the deployment wall-clock, timezone conversions and the
timezone-naive values some databases hand back.
"""
from datetime import date, datetime, time, timezone
from typing import Optional
import pytz
from ..config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def request_time() -> datetime:
    """FastAPI dependency for the instant an attendance request is processed."""
    return utc_now()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Make a datetime timezone-aware UTC.

    SQLite returns DateTime(timezone=True) columns as naive values; those
    are stored as UTC, so they are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (naive values are treated as UTC)
        timezone_str: Timezone string (default from settings)

    Returns:
        Local datetime (timezone-aware)
    """
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return ensure_utc(utc_datetime).astimezone(tz)


def local_today(now_utc: datetime, timezone_str: Optional[str] = None) -> date:
    """Attendance day of an instant, in the deployment timezone."""
    return utc_to_local(now_utc, timezone_str).date()


def format_clock(value: time) -> str:
    """12-hour label used in notification text, e.g. '8:00 AM'."""
    return datetime.combine(date.today(), value).strftime("%I:%M %p").lstrip("0")


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()
