"""
Tests for administrative overrides: extend, adjust duration, cancel, update,
plus the admin listing and analytics views.
"""
from datetime import timedelta

import pytest

from cargo_subscriptions.core.database import get_db_session
from cargo_subscriptions.core.errors import InvalidStateTransitionError, ValidationError
from cargo_subscriptions.features.audit.service import list_audit_entries
from cargo_subscriptions.features.subscriptions import store
from cargo_subscriptions.features.subscriptions.admin_service import (
    adjust_subscription_duration,
    cancel_subscription,
    extend_subscription,
    get_subscription_analytics,
    list_subscriptions,
    reject_subscription,
    update_subscription,
)
from cargo_subscriptions.features.subscriptions.service import get_current_active_subscription
from cargo_subscriptions.features.users.service import get_user_pointer
from cargo_subscriptions.models.subscription import PaymentMethod, PaymentStatus, SubscriptionStatus
from cargo_subscriptions.workers.subscription_jobs import expire_subscriptions


def _history(subscription_id):
    with get_db_session() as session:
        return store.list_history(session, subscription_id)


def test_extend_active_adds_exact_days_and_records_history(user_id, make_active, now):
    active = make_active(user_id)
    later = now + timedelta(days=3)
    extended = extend_subscription(active.id, "admin-1", 30, "Service outage", compensation_type="service_issue", now=later)

    assert extended.expires_at == active.expires_at + timedelta(days=30)
    assert extended.status == SubscriptionStatus.ACTIVE

    history = _history(active.id)
    assert len(history) == 1
    entry = history[0]
    assert entry.action == "extend"
    assert entry.days == 30
    assert entry.previous_expires_at == active.expires_at
    assert entry.new_expires_at == extended.expires_at
    assert entry.compensation_type == "service_issue"
    assert entry.performed_by == "admin-1"
    assert entry.performed_at == later

    assert get_user_pointer(user_id).subscription_expires_at == extended.expires_at


def test_history_is_append_only(user_id, make_active, now):
    active = make_active(user_id)
    extend_subscription(active.id, "admin-1", 10, "goodwill", now=now + timedelta(days=1))
    adjust_subscription_duration(active.id, "admin-1", -3, "billing correction", now=now + timedelta(days=2))

    history = _history(active.id)
    assert [h.action for h in history] == ["adjust_duration", "extend"]
    assert history[0].previous_expires_at == history[1].new_expires_at


def test_extend_expired_reactivates_from_now(user_id, make_active, now):
    active = make_active(user_id)
    expire_subscriptions(now + timedelta(days=31))
    assert get_current_active_subscription(user_id, now=now + timedelta(days=31)).plan_id == "basic"

    later = now + timedelta(days=40)
    extended = extend_subscription(active.id, "admin-1", 30, "Customer paid late", now=later)

    assert extended.status == SubscriptionStatus.ACTIVE
    assert extended.expires_at == later + timedelta(days=30)
    assert _history(active.id)[0].previous_status == "expired"
    pointer = get_user_pointer(user_id)
    assert pointer.subscription_plan == "pro"
    assert pointer.subscription_status == "active"


def test_extend_validation(user_id, make_active, now):
    active = make_active(user_id)
    with pytest.raises(ValidationError):
        extend_subscription(active.id, "admin-1", 0, "nope", now=now)
    with pytest.raises(ValidationError):
        extend_subscription(active.id, "admin-1", 10, "ok", compensation_type="bribe", now=now)
    with pytest.raises(ValidationError):
        extend_subscription(active.id, "admin-1", 10, "", now=now)


def test_adjust_duration_shifts_existing_expiry(user_id, make_active, now):
    active = make_active(user_id)
    adjusted = adjust_subscription_duration(active.id, "admin-1", -5, "Trial overlap", now=now + timedelta(days=1))
    assert adjusted.expires_at == active.expires_at - timedelta(days=5)
    assert adjusted.status == SubscriptionStatus.ACTIVE
    assert _history(active.id)[0].days == -5


def test_adjust_duration_requires_active(user_id, make_pending, now):
    pending = make_pending(user_id)
    with pytest.raises(InvalidStateTransitionError):
        adjust_subscription_duration(pending.id, "admin-1", 5, "early", now=now)


def test_adjust_cannot_end_before_activation(user_id, make_active, now):
    active = make_active(user_id)
    with pytest.raises(ValidationError):
        adjust_subscription_duration(active.id, "admin-1", -31, "too far", now=now)


def test_cancel_with_refund(user_id, make_active, now):
    active = make_active(user_id)
    cancelled = cancel_subscription(
        active.id, "admin-1", "Customer asked", "user_request", refund_amount=500, now=now + timedelta(days=1)
    )
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert cancelled.refund_amount == 500
    assert cancelled.cancellation_category == "user_request"

    pointer = get_user_pointer(user_id)
    assert pointer.subscription_plan == "basic"
    assert list_audit_entries(target_id=active.id, action="subscription_cancelled")[0].details["refund_amount"] == 500


def test_cancel_without_refund_keeps_payment_completed(user_id, make_active, now):
    active = make_active(user_id)
    cancelled = cancel_subscription(active.id, "admin-1", "Policy breach", "policy_violation", now=now)
    assert cancelled.payment_status == PaymentStatus.COMPLETED
    assert cancelled.refund_amount == 0


def test_refund_cannot_exceed_price(user_id, make_active, now):
    active = make_active(user_id)
    with pytest.raises(ValidationError):
        cancel_subscription(active.id, "admin-1", "refund", "other", refund_amount=5000, now=now)
    with get_db_session() as session:
        assert store.require_subscription(session, active.id).status == SubscriptionStatus.ACTIVE


def test_basic_subscription_is_immune_to_overrides(user_id, now):
    basic = get_current_active_subscription(user_id, now=now)
    with pytest.raises(InvalidStateTransitionError):
        cancel_subscription(basic.id, "admin-1", "cleanup", "other", now=now)
    with pytest.raises(InvalidStateTransitionError):
        extend_subscription(basic.id, "admin-1", 30, "gift", now=now)
    with pytest.raises(InvalidStateTransitionError):
        adjust_subscription_duration(basic.id, "admin-1", 5, "gift", now=now)
    with pytest.raises(ValidationError):
        update_subscription(basic.id, "admin-1", {"expires_at": now + timedelta(days=5)}, now=now)


def test_update_fields_without_status_change(user_id, make_pending, now):
    pending = make_pending(user_id)
    updated = update_subscription(
        pending.id,
        "admin-1",
        {"admin_notes": "Called customer", "payment_method": "bank_transfer", "payment_details": {"reference": "BT-77"}},
        now=now,
    )
    assert updated.status == SubscriptionStatus.PENDING
    assert updated.admin_notes == "Called customer"
    assert updated.payment_method == PaymentMethod.BANK_TRANSFER
    assert updated.payment_details.reference == "BT-77"


def test_update_expiry_override_is_recorded(user_id, make_active, now):
    active = make_active(user_id)
    target = active.expires_at + timedelta(days=7)
    updated = update_subscription(active.id, "admin-1", {"expires_at": target}, reason="manual fix", now=now)
    assert updated.expires_at == target
    entry = _history(active.id)[0]
    assert entry.action == "update"
    assert entry.days == 7


def test_update_rejects_unknown_fields_and_terminal_states(user_id, make_pending, now):
    pending = make_pending(user_id)
    with pytest.raises(ValidationError):
        update_subscription(pending.id, "admin-1", {"status": "active"}, now=now)
    reject_subscription(pending.id, "admin-1", "dup", "other", now=now)
    with pytest.raises(InvalidStateTransitionError):
        update_subscription(pending.id, "admin-1", {"admin_notes": "late"}, now=now)


def test_list_subscriptions_filters_and_paginates(now, make_pending, make_active):
    for i in range(3):
        make_pending(f"user-p{i}", at=now - timedelta(hours=i))
    make_active("user-a0")

    page = list_subscriptions(status="pending", limit=2)
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert all(s.status == SubscriptionStatus.PENDING for s in page["subscriptions"])
    assert page["summary"]["by_status"]["pending"] == 3
    assert page["summary"]["by_status"]["active"] == 5  # one pro + four basic
    assert page["summary"]["completed_revenue"] == 999

    second = list_subscriptions(status="pending", limit=2, page=2, sort_order="asc")
    assert len(second["subscriptions"]) == 1

    with pytest.raises(ValidationError):
        list_subscriptions(sort_by="user_id")


def test_analytics_summary(now, make_pending, make_active):
    make_active("user-a")
    pending = make_pending("user-b", "business")
    reject_subscription(pending.id, "admin-1", "bad", "invalid_details", now=now)
    make_pending("user-c", "business")

    analytics = get_subscription_analytics()
    assert analytics["totals"]["rejected"] == 1
    assert analytics["totals"]["pending"] == 1
    assert analytics["revenue"]["completed"] == 999
    assert analytics["revenue"]["pending"] == 2499

    plans = {p["plan_id"]: p for p in analytics["plans"]}
    assert plans["pro"]["conversion_rate"] == 100.0
    assert plans["business"]["requests"] == 2
    assert plans["business"]["approved"] == 0
