"""
Tests for the admin approval workflow: activation timestamps, the single
active paid subscription invariant, concurrency and atomicity.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

import cargo_subscriptions.features.subscriptions.admin_service as admin_service
import cargo_subscriptions.features.subscriptions.effects as effects_module
from cargo_subscriptions.core.database import get_db_session, notifications, subscriptions
from cargo_subscriptions.core.errors import (
    AlreadyProcessedError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from cargo_subscriptions.features.audit.service import list_audit_entries
from cargo_subscriptions.features.subscriptions import store
from cargo_subscriptions.features.subscriptions.admin_service import approve_subscription
from cargo_subscriptions.features.subscriptions.service import get_current_active_subscription
from cargo_subscriptions.features.users.service import get_user_pointer
from cargo_subscriptions.models.subscription import PaymentStatus, SubscriptionStatus


def _user_notifications(user_id, type_):
    with get_db_session() as session:
        return session.execute(
            select(notifications)
            .where(notifications.c.user_id == user_id)
            .where(notifications.c.type == type_)
        ).fetchall()


def _active_paid(user_id):
    with get_db_session() as session:
        return session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status == "active")
            .where(subscriptions.c.plan_id != "basic")
        ).fetchall()


def test_approve_activates_from_now(user_id, make_pending, now):
    pending = make_pending(user_id, at=now - timedelta(days=3))
    approved = approve_subscription(pending.id, "admin-1", admin_name="Ops Admin", notes="M-Pesa verified", now=now)

    assert approved.status == SubscriptionStatus.ACTIVE
    assert approved.payment_status == PaymentStatus.COMPLETED
    assert approved.payment_verified is True
    assert approved.activated_at == now
    assert approved.expires_at == now + timedelta(days=30)
    assert approved.approved_by == "admin-1"
    assert approved.approved_by_name == "Ops Admin"
    assert approved.admin_notes == "M-Pesa verified"
    assert approved.version == pending.version + 1


def test_custom_duration_overrides_stored_duration(user_id, make_pending, now):
    pending = make_pending(user_id)
    approved = approve_subscription(pending.id, "admin-1", custom_duration=10, now=now)
    assert approved.duration_days == 30
    assert approved.expires_at == approved.activated_at + timedelta(days=10)


def test_custom_duration_out_of_range_leaves_pending(user_id, make_pending, now):
    pending = make_pending(user_id)
    with pytest.raises(ValidationError):
        approve_subscription(pending.id, "admin-1", custom_duration=0, now=now)
    with get_db_session() as session:
        assert store.require_subscription(session, pending.id).status == SubscriptionStatus.PENDING


def test_approve_syncs_user_pointer(user_id, make_pending, now):
    pending = make_pending(user_id)
    approved = approve_subscription(pending.id, "admin-1", now=now)

    pointer = get_user_pointer(user_id)
    assert pointer.subscription_plan == "pro"
    assert pointer.subscription_status == "active"
    assert pointer.subscription_expires_at == approved.expires_at
    assert pointer.current_subscription_id == approved.id
    assert pointer.pending_subscription_id is None
    assert get_current_active_subscription(user_id, now=now).id == approved.id


def test_at_most_one_active_paid_subscription(user_id, make_active, make_pending, now):
    first = make_active(user_id, "pro")
    assert len(_active_paid(user_id)) == 1

    upgrade = make_pending(user_id, "business", at=now + timedelta(days=5))
    second = approve_subscription(upgrade.id, "admin-1", now=now + timedelta(days=5))

    rows = _active_paid(user_id)
    assert [r.id for r in rows] == [second.id]
    with get_db_session() as session:
        old = store.require_subscription(session, first.id)
    assert old.status == SubscriptionStatus.REPLACED
    assert old.replaced_by == second.id
    assert get_user_pointer(user_id).subscription_plan == "business"

    audit = list_audit_entries(target_id=second.id, action="subscription_approved")
    assert audit[0].details["replaced"] == [first.id]


def test_replaced_subscription_cannot_be_reapproved(user_id, make_active, make_pending, now):
    first = make_active(user_id, "pro")
    make_active(user_id, "business", at=now + timedelta(days=1))
    with pytest.raises(InvalidStateTransitionError):
        approve_subscription(first.id, "admin-1", now=now + timedelta(days=2))


def test_second_approve_is_rejected_without_duplicate_effects(user_id, make_pending, now):
    pending = make_pending(user_id)
    approve_subscription(pending.id, "admin-1", now=now)
    with pytest.raises(InvalidStateTransitionError) as exc:
        approve_subscription(pending.id, "admin-2", now=now)
    assert exc.value.current_status == "active"

    assert len(_user_notifications(user_id, "subscription_approved")) == 1
    assert len(list_audit_entries(target_id=pending.id, action="subscription_approved")) == 1


def test_stale_writer_loses_race_with_already_processed(user_id, make_pending, now):
    pending = make_pending(user_id)
    with get_db_session() as session:
        stale = store.require_subscription(session, pending.id)

    approve_subscription(pending.id, "admin-1", now=now)

    with pytest.raises(AlreadyProcessedError) as exc:
        with get_db_session() as session:
            store.apply_transition(session, stale, "approve", {"approved_by": "admin-2"}, now=now)
    assert exc.value.code == "already_processed"

    with get_db_session() as session:
        assert store.require_subscription(session, pending.id).approved_by == "admin-1"


def test_failure_inside_transaction_leaves_pending(user_id, make_active, make_pending, monkeypatch, now):
    current = make_active(user_id, "pro")
    upgrade = make_pending(user_id, "business")
    pointer_before = get_user_pointer(user_id)

    def broken_sync(*args, **kwargs):
        raise RuntimeError("user store write failed")

    monkeypatch.setattr(admin_service, "sync_user_pointer", broken_sync)

    with pytest.raises(RuntimeError):
        approve_subscription(upgrade.id, "admin-1", now=now)

    with get_db_session() as session:
        assert store.require_subscription(session, upgrade.id).status == SubscriptionStatus.PENDING
        # the demotion in the same transaction was rolled back too
        assert store.require_subscription(session, current.id).status == SubscriptionStatus.ACTIVE
    assert get_user_pointer(user_id) == pointer_before
    # only the one from make_active
    assert len(_user_notifications(user_id, "subscription_approved")) == 1
    assert list_audit_entries(target_id=upgrade.id, action="subscription_approved") == []


def test_notification_failure_does_not_undo_approval(user_id, make_pending, monkeypatch, now):
    pending = make_pending(user_id)

    def broken_emit(**kwargs):
        raise ConnectionError("notification sink down")

    monkeypatch.setattr(effects_module, "emit_notification", broken_emit)

    approved = approve_subscription(pending.id, "admin-1", now=now)
    assert approved.status == SubscriptionStatus.ACTIVE

    with get_db_session() as session:
        assert store.require_subscription(session, pending.id).status == SubscriptionStatus.ACTIVE
    # the audit effect still ran after the failed notification
    assert len(list_audit_entries(target_id=pending.id, action="subscription_approved")) == 1


def test_approve_unknown_subscription():
    with pytest.raises(NotFoundError) as exc:
        approve_subscription("does-not-exist", "admin-1")
    assert exc.value.code == "subscription_not_found"


def test_replaced_subscription_owner_is_notified(user_id, make_active, make_pending, now):
    first = make_active(user_id, "pro")
    upgrade = make_pending(user_id, "business", at=now + timedelta(days=5))
    second = approve_subscription(upgrade.id, "admin-1", now=now + timedelta(days=5))

    rows = _user_notifications(user_id, "subscription_replaced")
    assert len(rows) == 1
    assert rows[0].subscription_id == first.id
    assert rows[0].message == "Your Pro Plan subscription has been replaced by Business Plan."
    assert rows[0].data["replaced_by"] == second.id


def test_first_paid_approval_sends_no_replacement_notice(user_id, make_active):
    make_active(user_id, "pro")
    assert _user_notifications(user_id, "subscription_replaced") == []
