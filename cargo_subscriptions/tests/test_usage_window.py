"""
Tests for the monthly usage window and the self-healing usage counter.
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from cargo_subscriptions.core.database import get_db_session
from cargo_subscriptions.features.subscriptions import store
from cargo_subscriptions.features.subscriptions.service import get_current_active_subscription
from cargo_subscriptions.features.usage.service import (
    count_loads_this_month,
    get_monthly_usage,
    record_load_posted,
    resolve_usage_window,
)

UTC = timezone.utc


def test_window_same_month_does_not_reset():
    now = datetime(2025, 3, 15, 9, 0, tzinfo=UTC)
    window = resolve_usage_window(now, datetime(2025, 3, 2, tzinfo=UTC))
    assert window.should_reset is False
    # 2025-03-01 00:00 in Nairobi (UTC+3)
    assert window.window_start == datetime(2025, 2, 28, 21, 0, tzinfo=UTC)


def test_window_new_month_resets():
    now = datetime(2025, 3, 1, 6, 0, tzinfo=UTC)
    assert resolve_usage_window(now, datetime(2025, 2, 27, tzinfo=UTC)).should_reset is True


def test_window_same_month_different_year_resets():
    now = datetime(2025, 3, 15, tzinfo=UTC)
    assert resolve_usage_window(now, datetime(2024, 3, 20, tzinfo=UTC)).should_reset is True


def test_window_missing_reset_marker_resets():
    assert resolve_usage_window(datetime(2025, 3, 15, tzinfo=UTC), None).should_reset is True


def test_window_uses_explicit_timezone():
    now = datetime(2025, 3, 15, 9, 0, tzinfo=UTC)
    window = resolve_usage_window(now, now, tz=ZoneInfo("UTC"))
    assert window.window_start == datetime(2025, 3, 1, tzinfo=UTC)


def test_counter_self_heals_on_first_read_of_new_month(user_id):
    feb = datetime(2025, 2, 20, 10, 0, tzinfo=UTC)
    sub = get_current_active_subscription(user_id, now=feb)

    record_load_posted(user_id, created_at=datetime(2025, 2, 21, tzinfo=UTC))
    record_load_posted(user_id, created_at=datetime(2025, 2, 22, tzinfo=UTC))
    stale = get_monthly_usage(sub.id, now=datetime(2025, 2, 25, tzinfo=UTC))
    assert stale.loads_this_month == 2

    # 22:00 UTC on Feb 28 is already March 1st in Nairobi
    record_load_posted(user_id, created_at=datetime(2025, 2, 28, 22, 0, tzinfo=UTC))
    first_of_march = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)
    usage = get_monthly_usage(sub.id, now=first_of_march)

    assert usage.loads_this_month == 1
    assert usage.last_usage_reset == first_of_march

    with get_db_session() as session:
        stored = store.require_subscription(session, sub.id)
        assert stored.usage.loads_this_month == 1
        assert stored.usage.last_usage_reset == first_of_march
        # usage write-back is not a lifecycle change
        assert stored.version == sub.version
        assert count_loads_this_month(session, user_id, first_of_march) == 1


def test_counter_within_month_keeps_reset_marker(user_id, now):
    sub = get_current_active_subscription(user_id, now=now)
    record_load_posted(user_id, created_at=now)
    usage = get_monthly_usage(sub.id, now=now.replace(hour=10))
    assert usage.loads_this_month == 1
    assert usage.last_usage_reset == now


def test_loads_of_other_users_are_not_counted(user_id, now):
    sub = get_current_active_subscription(user_id, now=now)
    record_load_posted("someone-else", created_at=now)
    assert get_monthly_usage(sub.id, now=now.replace(hour=10)).loads_this_month == 0
