"""
cargo_subscriptions/features/usage/service.py

Usage accounting service.

Usage is derived, not maintained: the count of load-creation events a user
made in the current calendar month. The subscription's usage sub-document
(loads_this_month, last_usage_reset) is a cached copy refreshed on read; the
month rollover is detected on read by comparing month/year, so no separate
reset job exists.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from cargo_subscriptions.core.clock import ensure_utc, normalize_now, same_month, start_of_month
from cargo_subscriptions.core.database import loads, session_scope
from cargo_subscriptions.features.subscriptions.store import require_subscription, write_usage
from cargo_subscriptions.models.subscription import UsageSnapshot


@dataclass(frozen=True)
class UsageWindow:
    should_reset: bool
    window_start: datetime


def resolve_usage_window(now: datetime, last_reset: Optional[datetime], tz=None) -> UsageWindow:
    """
    Decide whether the monthly counter must reset, and where the window starts.

    A reset is due whenever `last_reset` is missing or falls in a different
    calendar month/year than `now`. The window always starts at the first
    instant of `now`'s month.
    """
    now = ensure_utc(now)
    should_reset = last_reset is None or not same_month(ensure_utc(last_reset), now, tz)
    return UsageWindow(should_reset=should_reset, window_start=start_of_month(now, tz))


def record_load_posted(
    user_id: str,
    *,
    created_at: Optional[datetime] = None,
    title: Optional[str] = None,
    session: Optional[Session] = None,
) -> int:
    """
    Record a load-creation event.

    Belongs to the load path; the quota enforcer only ever reads these rows.
    """
    with session_scope(session) as s:
        result = s.execute(
            insert(loads).values(posted_by=user_id, title=title, created_at=normalize_now(created_at))
        )
        return result.inserted_primary_key[0]


def count_loads(session: Session, user_id: str, start: datetime, end: datetime) -> int:
    """Loads posted by `user_id` in [start, end)."""
    return session.execute(
        select(func.count())
        .select_from(loads)
        .where(loads.c.posted_by == user_id)
        .where(loads.c.created_at >= ensure_utc(start))
        .where(loads.c.created_at < ensure_utc(end))
    ).scalar() or 0


def count_loads_this_month(session: Session, user_id: str, now: Optional[datetime] = None) -> int:
    now = normalize_now(now)
    return count_loads(session, user_id, start_of_month(now), now)


def get_monthly_usage(
    subscription_id: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> UsageSnapshot:
    """
    Current-month usage for a subscription, self-healing on read.

    The count is recomputed from the load events and written back; when the
    stored reset marker is from an earlier month it is moved to `now`.
    """
    now = normalize_now(now)
    with session_scope(session) as s:
        sub = require_subscription(s, subscription_id)
        window = resolve_usage_window(now, sub.usage.last_usage_reset)
        used = count_loads(s, sub.user_id, window.window_start, now)
        usage = UsageSnapshot(
            loads_this_month=used,
            last_usage_reset=now if window.should_reset else sub.usage.last_usage_reset,
        )
        if usage != sub.usage:
            write_usage(s, sub.id, usage)
    return usage
