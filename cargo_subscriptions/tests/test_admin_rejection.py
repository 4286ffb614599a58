"""
Tests for rejecting pending subscriptions.
"""
import pytest
from sqlalchemy import delete, select

from cargo_subscriptions.core.database import get_db_session, notifications, subscriptions
from cargo_subscriptions.core.errors import InvalidStateTransitionError, ValidationError
from cargo_subscriptions.features.audit.service import list_audit_entries
from cargo_subscriptions.features.subscriptions import store
from cargo_subscriptions.features.subscriptions.admin_service import reject_subscription
from cargo_subscriptions.features.users.service import get_user_pointer
from cargo_subscriptions.models.subscription import PaymentStatus, SubscriptionStatus


def _rejections(user_id):
    with get_db_session() as session:
        return session.execute(
            select(notifications)
            .where(notifications.c.user_id == user_id)
            .where(notifications.c.type == "subscription_rejected")
        ).fetchall()


def test_reject_pending(user_id, make_pending, now):
    pending = make_pending(user_id)
    rejected = reject_subscription(
        pending.id, "admin-1", "M-Pesa code not found", "payment_failed", refund_required=False, now=now
    )

    assert rejected.status == SubscriptionStatus.REJECTED
    assert rejected.payment_status == PaymentStatus.FAILED
    assert rejected.rejection_reason == "M-Pesa code not found"
    assert rejected.rejection_category == "payment_failed"
    assert rejected.rejected_by == "admin-1"
    assert rejected.rejected_at == now

    pointer = get_user_pointer(user_id)
    assert pointer.pending_subscription_id is None
    assert pointer.subscription_plan == "basic"

    audit = list_audit_entries(target_id=pending.id, action="subscription_rejected")
    assert [e.action for e in audit] == ["subscription_rejected"]
    assert audit[0].details["reason_category"] == "payment_failed"


def test_reject_message_uses_fixed_category_text(user_id, make_pending, now):
    pending = make_pending(user_id)
    reject_subscription(pending.id, "admin-1", "internal: code reused from account 889", "payment_failed", now=now)

    rows = _rejections(user_id)
    assert len(rows) == 1
    assert rows[0].message == "Your Pro Plan request was declined. Reason: Payment could not be verified."
    assert "889" not in rows[0].message


def test_reject_other_category_echoes_reason(user_id, make_pending, now):
    pending = make_pending(user_id)
    reject_subscription(pending.id, "admin-1", "Amount sent was KES 500 short", "other", now=now)
    assert "Amount sent was KES 500 short" in _rejections(user_id)[0].message


def test_reject_twice_is_invalid_and_notifies_once(user_id, make_pending, now):
    pending = make_pending(user_id)
    reject_subscription(pending.id, "admin-1", "bad details", "invalid_details", now=now)

    with pytest.raises(InvalidStateTransitionError) as exc:
        reject_subscription(pending.id, "admin-1", "bad details", "invalid_details", now=now)
    assert exc.value.current_status == "rejected"
    assert len(_rejections(user_id)) == 1


def test_reject_restores_missing_basic_subscription(user_id, make_pending, now):
    pending = make_pending(user_id)
    with get_db_session() as session:
        session.execute(
            delete(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.plan_id == "basic")
        )

    reject_subscription(pending.id, "admin-1", "suspicious", "fraud_suspected", now=now)

    with get_db_session() as session:
        basic = store.find_active_basic(session, user_id)
    assert basic is not None
    assert basic.expires_at is None
    assert get_user_pointer(user_id).current_subscription_id == basic.id


@pytest.mark.parametrize(
    "reason,category",
    [
        ("", "payment_failed"),
        ("   ", "payment_failed"),
        ("bad", "not_a_category"),
    ],
)
def test_reject_input_validation(user_id, make_pending, now, reason, category):
    pending = make_pending(user_id)
    with pytest.raises(ValidationError):
        reject_subscription(pending.id, "admin-1", reason, category, now=now)
    with get_db_session() as session:
        assert store.require_subscription(session, pending.id).status == SubscriptionStatus.PENDING


def test_active_subscription_cannot_be_rejected(user_id, make_active, now):
    active = make_active(user_id)
    with pytest.raises(InvalidStateTransitionError):
        reject_subscription(active.id, "admin-1", "late", "other", now=now)


def test_reject_reason_with_own_full_stop_is_not_doubled(user_id, make_pending, now):
    pending = make_pending(user_id)
    reject_subscription(pending.id, "admin-1", "Wrong till number used.", "other", now=now)
    message = _rejections(user_id)[0].message
    assert message.endswith("Reason: Wrong till number used.")
    assert ".." not in message
