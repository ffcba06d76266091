"""Timestamp helpers. The engine works in timezone-aware UTC throughout."""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def add_minutes(moment: datetime, minutes: int) -> datetime:
    return moment + timedelta(minutes=minutes)


def add_days(moment: datetime, days: int) -> datetime:
    return moment + timedelta(days=days)


def local_day(moment: datetime, tz_name: str) -> date:
    """Calendar day of ``moment`` in the given IANA time zone."""
    return ensure_aware(moment).astimezone(ZoneInfo(tz_name)).date()
