"""
Time helpers.

All datetimes handled by the engine are timezone-aware UTC. Calendar
boundaries (day, month) are evaluated in the configured business timezone
and converted back to UTC before they touch the database.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from cargo_subscriptions.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are assumed to be UTC.

    SQLite hands DateTime(timezone=True) columns back without tzinfo.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return utcnow()
    return ensure_utc(now)


def business_tz(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or settings.BUSINESS_TIMEZONE)


def to_business(value: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    return ensure_utc(value).astimezone(tz or business_tz())


def day_bounds(now: datetime, days_ahead: int, tz: Optional[ZoneInfo] = None):
    """[start, end) of the local calendar day `days_ahead` days after `now`, in UTC."""
    zone = tz or business_tz()
    local = to_business(now, zone) + relativedelta(days=days_ahead)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + relativedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def start_of_month(now: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    """First instant of `now`'s local calendar month, returned in UTC."""
    local = to_business(now, tz)
    return local.replace(day=1, hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def previous_month_bounds(now: datetime, tz: Optional[ZoneInfo] = None):
    """[start, end) of the calendar month before `now`'s, in UTC."""
    zone = tz or business_tz()
    this_month = to_business(now, zone).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_month = this_month - relativedelta(months=1)
    return last_month.astimezone(timezone.utc), this_month.astimezone(timezone.utc)


def same_month(a: datetime, b: datetime, tz: Optional[ZoneInfo] = None) -> bool:
    zone = tz or business_tz()
    la, lb = to_business(a, zone), to_business(b, zone)
    return (la.year, la.month) == (lb.year, lb.month)

