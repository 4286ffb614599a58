"""
cargo_subscriptions/features/subscriptions/admin_service.py

Admin approval workflow and administrative overrides.

Every operation follows the same shape:
1. validate admin input (ValidationError)
2. inside one primary transaction: read, check the transition, write the
   subscription with a conditional update, demote/provision related
   subscriptions, append history, re-derive the user pointer
3. after commit: the user notification and the audit entry, each isolated

A failure anywhere in step 2 leaves every row as it was.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import math

from sqlalchemy import func, select

from cargo_subscriptions.core.clock import ensure_utc, normalize_now
from cargo_subscriptions.core.database import get_db_session, primary_transaction, subscriptions
from cargo_subscriptions.core.errors import ValidationError
from cargo_subscriptions.core.logging import log_event
from cargo_subscriptions.features.plans.service import require_plan
from cargo_subscriptions.features.subscriptions import lifecycle, store
from cargo_subscriptions.features.subscriptions.effects import PostCommitEffects
from cargo_subscriptions.features.subscriptions.service import ensure_basic_subscription
from cargo_subscriptions.features.users.service import sync_user_pointer
from cargo_subscriptions.models.subscription import (
    HistoryEntry,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)

UPDATABLE_FIELDS = {"admin_notes", "payment_method", "payment_details", "expires_at"}
SORTABLE_FIELDS = {"requested_at", "price", "status", "plan_id", "expires_at"}
MAX_PAGE_SIZE = 100


def _notify_replaced(effects: PostCommitEffects, replaced: List[Subscription], successor: Subscription, now: datetime) -> None:
    for old in replaced:
        effects.notify_user(old.user_id, lifecycle.replaced_notification(old, successor), subscription_id=old.id, now=now)


def approve_subscription(
    subscription_id: str,
    admin_id: str,
    *,
    admin_name: Optional[str] = None,
    payment_verified: bool = True,
    notes: Optional[str] = None,
    custom_duration: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Approve a pending subscription.

    expires_at = activation time + (custom_duration or the stored duration).
    Any other active paid subscription of the user becomes `replaced`.

    Raises:
        NotFoundError, ValidationError, InvalidStateTransitionError,
        AlreadyProcessedError, DependencyUnavailableError
    """
    now = normalize_now(now)
    notes = lifecycle.validate_notes(notes)
    custom_duration = lifecycle.validate_custom_duration(custom_duration)
    effects = PostCommitEffects("approve")

    with primary_transaction() as session:
        sub = store.require_subscription(session, subscription_id)
        # Entitlements are snapshotted from the catalog as it stands at approval
        plan = require_plan(sub.plan_id, session)
        activated_at, expires_at = lifecycle.compute_activation(now, custom_duration or sub.duration_days)
        approved = store.apply_transition(
            session,
            sub,
            "approve",
            {
                "features": plan.features,
                "payment_status": PaymentStatus.COMPLETED,
                "payment_verified": payment_verified,
                "activated_at": activated_at,
                "expires_at": expires_at,
                "approved_by": admin_id,
                "approved_by_name": admin_name,
                "approved_at": now,
                "admin_notes": notes,
            },
            now=now,
        )
        replaced = store.demote_active_paid(session, approved.user_id, replaced_by=approved.id, now=now)
        ensure_basic_subscription(session, approved.user_id, now)
        sync_user_pointer(session, approved.user_id, now)

        _notify_replaced(effects, replaced, approved, now)
        effects.notify_user(approved.user_id, lifecycle.approved_notification(approved), subscription_id=approved.id, now=now)
        effects.audit(
            action="subscription_approved",
            actor_id=admin_id,
            target_id=approved.id,
            user_id=approved.user_id,
            details={
                "plan_id": approved.plan_id,
                "amount": approved.price,
                "payment_method": approved.payment_method.value if approved.payment_method else None,
                "payment_verified": payment_verified,
                "custom_duration": custom_duration,
                "expires_at": expires_at.isoformat(),
                "replaced": [r.id for r in replaced],
                "notes": notes,
            },
            now=now,
        )

    effects.run()
    log_event(
        "info",
        "admin.subscription_approved",
        user_id=approved.user_id,
        subscription_id=approved.id,
        event_type="subscription_approved",
        extra={"admin_id": admin_id, "replaced": len(replaced)},
    )
    return approved


def reject_subscription(
    subscription_id: str,
    admin_id: str,
    reason: str,
    reason_category: str,
    *,
    notes: Optional[str] = None,
    refund_required: bool = False,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Reject a pending subscription.

    The user keeps (or is given) the basic subscription. The notification
    carries the fixed message for `reason_category`; only `other` echoes the
    admin's reason text.
    """
    now = normalize_now(now)
    reason = lifecycle.validate_reason(reason, "rejection reason")
    reason_category = lifecycle.validate_choice(reason_category, lifecycle.REJECTION_CATEGORIES, "reason category")
    notes = lifecycle.validate_notes(notes)
    effects = PostCommitEffects("reject")

    with primary_transaction() as session:
        sub = store.require_subscription(session, subscription_id)
        rejected = store.apply_transition(
            session,
            sub,
            "reject",
            {
                "payment_status": PaymentStatus.FAILED,
                "rejection_reason": reason,
                "rejection_category": reason_category,
                "refund_required": bool(refund_required),
                "rejected_by": admin_id,
                "rejected_at": now,
                "admin_notes": notes,
            },
            now=now,
        )
        ensure_basic_subscription(session, rejected.user_id, now)
        sync_user_pointer(session, rejected.user_id, now)

        message = lifecycle.rejection_message(reason_category, reason)
        effects.notify_user(rejected.user_id, lifecycle.rejected_notification(rejected, message), subscription_id=rejected.id, now=now)
        effects.audit(
            action="subscription_rejected",
            actor_id=admin_id,
            target_id=rejected.id,
            user_id=rejected.user_id,
            details={
                "plan_id": rejected.plan_id,
                "reason": reason,
                "reason_category": reason_category,
                "refund_required": bool(refund_required),
                "notes": notes,
            },
            now=now,
        )

    effects.run()
    log_event(
        "info",
        "admin.subscription_rejected",
        user_id=rejected.user_id,
        subscription_id=rejected.id,
        event_type="subscription_rejected",
        extra={"admin_id": admin_id, "category": reason_category},
    )
    return rejected


def cancel_subscription(
    subscription_id: str,
    admin_id: str,
    reason: str,
    reason_category: str = "other",
    *,
    refund_amount: float = 0,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Cancel an active paid subscription, optionally recording a refund (0 <= refund <= price)."""
    now = normalize_now(now)
    reason = lifecycle.validate_reason(reason, "cancellation reason")
    reason_category = lifecycle.validate_choice(reason_category, lifecycle.CANCELLATION_CATEGORIES, "reason category")
    notes = lifecycle.validate_notes(notes)
    refund_amount = float(refund_amount or 0)
    if refund_amount < 0:
        raise ValidationError("Refund amount cannot be negative")
    effects = PostCommitEffects("cancel")

    with primary_transaction() as session:
        sub = store.require_subscription(session, subscription_id)
        lifecycle.ensure_transition_allowed("cancel", sub)
        if refund_amount > sub.price:
            raise ValidationError(f"Refund cannot exceed the amount paid ({sub.currency} {sub.price:,.2f})")

        values: Dict[str, Any] = {
            "cancelled_by": admin_id,
            "cancelled_at": now,
            "cancellation_reason": reason,
            "cancellation_category": reason_category,
            "refund_amount": refund_amount,
            "deactivated_at": now,
            "admin_notes": notes,
        }
        if refund_amount > 0:
            values["payment_status"] = PaymentStatus.REFUNDED
        cancelled = store.apply_transition(session, sub, "cancel", values, now=now)
        ensure_basic_subscription(session, cancelled.user_id, now)
        sync_user_pointer(session, cancelled.user_id, now)

        effects.notify_user(cancelled.user_id, lifecycle.cancelled_notification(cancelled, refund_amount), subscription_id=cancelled.id, now=now)
        effects.audit(
            action="subscription_cancelled",
            actor_id=admin_id,
            target_id=cancelled.id,
            user_id=cancelled.user_id,
            details={
                "plan_id": cancelled.plan_id,
                "reason": reason,
                "reason_category": reason_category,
                "refund_amount": refund_amount,
                "notes": notes,
            },
            now=now,
        )

    effects.run()
    log_event(
        "info",
        "admin.subscription_cancelled",
        user_id=cancelled.user_id,
        subscription_id=cancelled.id,
        event_type="subscription_cancelled",
        extra={"admin_id": admin_id, "refund_amount": refund_amount},
    )
    return cancelled


def extend_subscription(
    subscription_id: str,
    admin_id: str,
    days: int,
    reason: str,
    *,
    compensation_type: str = "goodwill",
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Extend an active or expired subscription by `days`.

    Active: the existing expiry moves out by `days`. Expired: the subscription
    is reactivated with expiry now + `days`, replacing any other active paid one.
    """
    now = normalize_now(now)
    days = lifecycle.validate_extension_days(days)
    reason = lifecycle.validate_reason(reason)
    compensation_type = lifecycle.validate_choice(compensation_type, lifecycle.COMPENSATION_TYPES, "compensation type")
    notes = lifecycle.validate_notes(notes)
    effects = PostCommitEffects("extend")

    with primary_transaction() as session:
        sub = store.require_subscription(session, subscription_id)
        lifecycle.ensure_transition_allowed("extend", sub)
        reactivated = sub.status == SubscriptionStatus.EXPIRED
        new_expiry = lifecycle.compute_extension(sub, days, now)

        extended = store.apply_transition(session, sub, "extend", {"expires_at": new_expiry}, now=now)
        if reactivated:
            replaced = store.demote_active_paid(session, extended.user_id, replaced_by=extended.id, now=now)
            _notify_replaced(effects, replaced, extended, now)
        store.append_history(
            session,
            HistoryEntry(
                subscription_id=sub.id,
                action="extend",
                days=days,
                previous_expires_at=sub.expires_at,
                new_expires_at=new_expiry,
                previous_status=sub.status.value,
                reason=reason,
                notes=notes,
                compensation_type=compensation_type,
                performed_by=admin_id,
                performed_at=now,
            ),
        )
        sync_user_pointer(session, extended.user_id, now)

        effects.notify_user(extended.user_id, lifecycle.extended_notification(extended, days, reactivated), subscription_id=extended.id, now=now)
        effects.audit(
            action="subscription_extended",
            actor_id=admin_id,
            target_id=extended.id,
            user_id=extended.user_id,
            details={
                "days": days,
                "previous_expires_at": sub.expires_at.isoformat() if sub.expires_at else None,
                "new_expires_at": new_expiry.isoformat(),
                "reactivated": reactivated,
                "reason": reason,
                "compensation_type": compensation_type,
            },
            now=now,
        )

    effects.run()
    return extended


def adjust_subscription_duration(
    subscription_id: str,
    admin_id: str,
    days: int,
    reason: str,
    *,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Add (or, with negative `days`, remove) days from an active subscription's existing expiry."""
    now = normalize_now(now)
    days = lifecycle.validate_adjustment_days(days)
    reason = lifecycle.validate_reason(reason)
    notes = lifecycle.validate_notes(notes)
    effects = PostCommitEffects("adjust_duration")

    with primary_transaction() as session:
        sub = store.require_subscription(session, subscription_id)
        lifecycle.ensure_transition_allowed("adjust_duration", sub)
        new_expiry = lifecycle.compute_adjustment(sub, days)

        adjusted = store.apply_transition(session, sub, "adjust_duration", {"expires_at": new_expiry}, now=now)
        store.append_history(
            session,
            HistoryEntry(
                subscription_id=sub.id,
                action="adjust_duration",
                days=days,
                previous_expires_at=sub.expires_at,
                new_expires_at=new_expiry,
                previous_status=sub.status.value,
                reason=reason,
                notes=notes,
                performed_by=admin_id,
                performed_at=now,
            ),
        )
        sync_user_pointer(session, adjusted.user_id, now)

        effects.notify_user(adjusted.user_id, lifecycle.adjusted_notification(adjusted, days), subscription_id=adjusted.id, now=now)
        effects.audit(
            action="subscription_duration_adjusted",
            actor_id=admin_id,
            target_id=adjusted.id,
            user_id=adjusted.user_id,
            details={
                "days": days,
                "previous_expires_at": sub.expires_at.isoformat(),
                "new_expires_at": new_expiry.isoformat(),
                "reason": reason,
            },
            now=now,
        )

    effects.run()
    return adjusted


def update_subscription(
    subscription_id: str,
    admin_id: str,
    changes: Dict[str, Any],
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Administrative edit of a pending or active subscription without a status change.

    An explicit expires_at is an admin override (active subscriptions only)
    and is recorded in the history like any other duration change.
    """
    now = normalize_now(now)
    if not changes:
        raise ValidationError("No changes supplied")
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = {}
    if "admin_notes" in changes:
        values["admin_notes"] = lifecycle.validate_notes(changes["admin_notes"])
    if "payment_method" in changes:
        try:
            values["payment_method"] = PaymentMethod(changes["payment_method"])
        except ValueError:
            raise ValidationError(f"Invalid payment method: {changes['payment_method']!r}")
    if "payment_details" in changes:
        values["payment_details"] = PaymentDetails.from_raw(changes["payment_details"])
    if "expires_at" in changes:
        if not isinstance(changes["expires_at"], datetime):
            raise ValidationError("expires_at must be a datetime")
        values["expires_at"] = ensure_utc(changes["expires_at"])
    effects = PostCommitEffects("update")

    with primary_transaction() as session:
        sub = store.require_subscription(session, subscription_id)
        lifecycle.ensure_transition_allowed("update", sub)
        if "expires_at" in values:
            if sub.status != SubscriptionStatus.ACTIVE or sub.is_basic:
                raise ValidationError("Only an active paid subscription can have its expiry overridden")
            if sub.activated_at and values["expires_at"] <= sub.activated_at:
                raise ValidationError("Expiry cannot precede activation")

        updated = store.apply_transition(session, sub, "update", values, now=now)
        if "expires_at" in values:
            delta = values["expires_at"] - sub.expires_at if sub.expires_at else None
            store.append_history(
                session,
                HistoryEntry(
                    subscription_id=sub.id,
                    action="update",
                    days=delta.days if delta is not None else None,
                    previous_expires_at=sub.expires_at,
                    new_expires_at=values["expires_at"],
                    previous_status=sub.status.value,
                    reason=reason,
                    performed_by=admin_id,
                    performed_at=now,
                ),
            )
        sync_user_pointer(session, updated.user_id, now)

        effects.notify_user(updated.user_id, lifecycle.updated_notification(updated), subscription_id=updated.id, now=now)
        effects.audit(
            action="subscription_updated",
            actor_id=admin_id,
            target_id=updated.id,
            user_id=updated.user_id,
            details={"fields": sorted(changes), "reason": reason},
            now=now,
        )

    effects.run()
    return updated


def list_subscriptions(
    *,
    status: Optional[str] = None,
    payment_method: Optional[str] = None,
    user_id: Optional[str] = None,
    sort_by: str = "requested_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """Admin listing with filters, sorting, pagination and a per-status summary."""
    if sort_by not in SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort by {sort_by!r}")
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    conditions = []
    if status:
        conditions.append(subscriptions.c.status == SubscriptionStatus(status).value)
    if payment_method:
        conditions.append(subscriptions.c.payment_method == PaymentMethod(payment_method).value)
    if user_id:
        conditions.append(subscriptions.c.user_id == user_id)

    column = subscriptions.c[sort_by]
    order = column.asc() if sort_order == "asc" else column.desc()

    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(subscriptions).where(*conditions)
        ).scalar() or 0
        rows = session.execute(
            select(subscriptions)
            .where(*conditions)
            .order_by(order, subscriptions.c.id)
            .offset((page - 1) * limit)
            .limit(limit)
        ).fetchall()
        by_status = dict(
            session.execute(
                select(subscriptions.c.status, func.count()).group_by(subscriptions.c.status)
            ).fetchall()
        )
        completed_revenue = session.execute(
            select(func.coalesce(func.sum(subscriptions.c.price), 0))
            .where(subscriptions.c.payment_status == PaymentStatus.COMPLETED.value)
        ).scalar()

    return {
        "subscriptions": [store.row_to_subscription(r) for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
        "summary": {
            "by_status": {s.value: by_status.get(s.value, 0) for s in SubscriptionStatus},
            "completed_revenue": float(completed_revenue or 0),
        },
    }


def get_subscription_analytics() -> Dict[str, Any]:
    """Status totals, revenue and per-plan distribution with conversion rate."""
    with get_db_session() as session:
        by_status = dict(
            session.execute(
                select(subscriptions.c.status, func.count()).group_by(subscriptions.c.status)
            ).fetchall()
        )
        revenue = dict(
            session.execute(
                select(subscriptions.c.payment_status, func.coalesce(func.sum(subscriptions.c.price), 0))
                .group_by(subscriptions.c.payment_status)
            ).fetchall()
        )
        per_plan = session.execute(
            select(
                subscriptions.c.plan_id,
                func.count().label("requests"),
                func.count(subscriptions.c.approved_at).label("approved"),
                func.coalesce(func.sum(subscriptions.c.price).filter(
                    subscriptions.c.payment_status == PaymentStatus.COMPLETED.value
                ), 0).label("revenue"),
            ).group_by(subscriptions.c.plan_id)
        ).fetchall()

    plans_out: List[Dict[str, Any]] = []
    for row in sorted(per_plan, key=lambda r: r.plan_id):
        plans_out.append({
            "plan_id": row.plan_id,
            "requests": row.requests,
            "approved": row.approved,
            "revenue": float(row.revenue or 0),
            "conversion_rate": round(100.0 * row.approved / row.requests, 1) if row.requests else 0.0,
        })

    return {
        "totals": {s.value: by_status.get(s.value, 0) for s in SubscriptionStatus},
        "revenue": {
            "completed": float(revenue.get(PaymentStatus.COMPLETED.value, 0) or 0),
            "pending": float(revenue.get(PaymentStatus.PENDING.value, 0) or 0),
            "refunded": float(revenue.get(PaymentStatus.REFUNDED.value, 0) or 0),
        },
        "plans": plans_out,
    }
