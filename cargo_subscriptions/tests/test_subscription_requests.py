"""
Tests for user-side subscription operations: subscribe requests, current
subscription resolution, status view and stale pending listing.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from cargo_subscriptions.core.database import get_db_session, notifications, subscriptions
from cargo_subscriptions.core.errors import ConflictError, NotFoundError, ValidationError
from cargo_subscriptions.features.audit.service import list_audit_entries
from cargo_subscriptions.features.plans.service import update_plan
from cargo_subscriptions.features.subscriptions.service import (
    find_stale_pending,
    get_current_active_subscription,
    get_subscription_status,
    request_subscription,
)
from cargo_subscriptions.features.usage.service import record_load_posted
from cargo_subscriptions.features.users.service import get_user_pointer
from cargo_subscriptions.models.subscription import PaymentMethod, PaymentStatus, SubscriptionStatus


def test_current_subscription_is_never_empty(user_id, now):
    sub = get_current_active_subscription(user_id, now=now)
    assert sub.plan_id == "basic"
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.expires_at is None

    again = get_current_active_subscription(user_id, now=now + timedelta(hours=1))
    assert again.id == sub.id

    with get_db_session() as session:
        rows = session.execute(select(subscriptions).where(subscriptions.c.user_id == user_id)).fetchall()
    assert len(rows) == 1

    pointer = get_user_pointer(user_id)
    assert pointer.subscription_plan == "basic"
    assert pointer.current_subscription_id == sub.id


def test_paid_request_goes_pending(user_id, now):
    result = request_subscription(
        user_id, "pro", "mpesa", {"transaction_id": "QWE123", "till": "5551"}, now=now
    )
    sub = result["subscription"]
    assert result["requires_payment"] is True
    assert result["payment_instructions"]["method"] == "M-Pesa"
    assert sub.status == SubscriptionStatus.PENDING
    assert sub.payment_status == PaymentStatus.PENDING
    assert sub.payment_method == PaymentMethod.MPESA
    assert sub.payment_details.transaction_id == "QWE123"
    assert sub.payment_details.extra == {"till": "5551"}
    assert sub.activated_at is None
    assert sub.expires_at is None

    pointer = get_user_pointer(user_id)
    assert pointer.pending_subscription_id == sub.id
    # the basic safety net still governs until approval
    assert pointer.subscription_plan == "basic"


def test_paid_request_notifies_admins_and_audits(user_id, now):
    sub = request_subscription(user_id, "business", "bank_transfer", now=now)["subscription"]

    with get_db_session() as session:
        rows = session.execute(
            select(notifications).where(notifications.c.type == "subscription_request")
        ).fetchall()
    assert len(rows) == 1
    assert rows[0].user_id is None
    assert rows[0].user_type == "admin"
    assert rows[0].data["subscription_id"] == sub.id

    entries = list_audit_entries(target_id=sub.id)
    assert [e.action for e in entries] == ["subscription_request_created"]


def test_quarterly_request_prices_with_discount(user_id, now):
    sub = request_subscription(user_id, "pro", "card", billing_cycle="quarterly", now=now)["subscription"]
    assert sub.price == 2847.15
    assert sub.duration_days == 90
    assert sub.billing_cycle.value == "quarterly"


def test_second_pending_request_conflicts(user_id, make_pending, now):
    make_pending(user_id)
    with pytest.raises(ConflictError) as exc:
        request_subscription(user_id, "business", "mpesa", now=now)
    assert exc.value.code == "subscription_pending"


def test_free_plan_resolves_to_basic(user_id, now):
    result = request_subscription(user_id, "basic", now=now)
    assert result["requires_payment"] is False
    assert result["subscription"].plan_id == "basic"
    assert result["subscription"].status == SubscriptionStatus.ACTIVE


def test_request_validation(user_id, now):
    with pytest.raises(NotFoundError):
        request_subscription(user_id, "platinum", "mpesa", now=now)
    with pytest.raises(ValidationError):
        request_subscription(user_id, "pro", "cheque", now=now)
    with pytest.raises(ValidationError):
        request_subscription(user_id, "pro", "mpesa", billing_cycle="weekly", now=now)


def test_inactive_plan_cannot_be_requested(user_id, now):
    update_plan("business", {"is_active": False}, "admin-1", now=now)
    with pytest.raises(NotFoundError):
        request_subscription(user_id, "business", "mpesa", now=now)


def test_status_view_reports_usage_and_days(user_id, make_active, now):
    active = make_active(user_id)
    record_load_posted(user_id, created_at=now + timedelta(minutes=5))
    record_load_posted(user_id, created_at=now + timedelta(minutes=10))

    status = get_subscription_status(user_id, now=now + timedelta(days=2))
    assert status["subscription"].id == active.id
    assert status["days_remaining"] == 28
    assert status["usage"] == {"loads_this_month": 2, "max_loads": 25, "remaining": 23, "percentage": 8.0}
    assert status["pending_subscription_id"] is None
    assert status["history"] == []


def test_stale_pending_listing(now, make_pending):
    old = make_pending("user-old", at=now - timedelta(hours=30))
    make_pending("user-new", at=now - timedelta(hours=2))

    stale = find_stale_pending(24, now=now)
    assert [s.id for s in stale] == [old.id]
