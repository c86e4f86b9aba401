"""Timezone helpers. Timestamps are stored in UTC; calendar days use ACTIVITY_TIMEZONE."""
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive values (SQLite drops tzinfo) and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def activity_zone(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or settings.ACTIVITY_TIMEZONE)


def local_datetime(value: datetime, zone_name: Optional[str] = None) -> datetime:
    return ensure_utc(value).astimezone(activity_zone(zone_name))


def activity_date(value: datetime, zone_name: Optional[str] = None) -> date:
    """Calendar day a completion counts towards."""
    return local_datetime(value, zone_name).date()
