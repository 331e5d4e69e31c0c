"""Clock and user-local time helpers.

Timestamps are stored as naive UTC; user-facing boundaries (today, this
week, reminder times, quiet hours) are evaluated in the user's IANA zone.
"""
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC, matching how the store keeps timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return ZoneInfo("UTC")


def to_local(moment: datetime, tz_name: Optional[str]) -> datetime:
    """Convert a naive UTC timestamp to an aware local datetime."""
    return moment.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name))


def to_utc_naive(local: datetime) -> datetime:
    """Convert an aware datetime back to naive UTC."""
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def local_day_start(now: datetime, tz_name: Optional[str]) -> datetime:
    """Naive UTC instant of the most recent local midnight."""
    local = to_local(now, tz_name)
    midnight = datetime.combine(local.date(), time.min, tzinfo=local.tzinfo)
    return to_utc_naive(midnight)


def local_week_start(now: datetime, tz_name: Optional[str]) -> datetime:
    """Naive UTC instant of the most recent local Monday 00:00."""
    local = to_local(now, tz_name)
    monday = local.date() - timedelta(days=local.weekday())
    return to_utc_naive(datetime.combine(monday, time.min, tzinfo=local.tzinfo))


def local_date(moment: datetime, tz_name: Optional[str]):
    return to_local(moment, tz_name).date()


def hhmm(local: datetime) -> str:
    return local.strftime("%H:%M")


def parse_hhmm(value: str) -> time:
    """Parse a "HH:MM" string, raising ValueError on bad input."""
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))
