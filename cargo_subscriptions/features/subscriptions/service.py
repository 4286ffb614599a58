"""
cargo_subscriptions/features/subscriptions/service.py

User-side subscription operations.

Handles:
- Subscribe requests (paid plans go to pending, free resolves to basic)
- Current subscription resolution with the lazily created basic fallback
- Subscription status view (usage, days left, recent history)
- Stale pending request listing for admin follow-up
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cargo_subscriptions.core.clock import normalize_now
from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.database import get_db_session, primary_transaction, subscriptions
from cargo_subscriptions.core.errors import ConflictError, ValidationError
from cargo_subscriptions.features.notifications.service import ADMIN_USER_TYPE
from cargo_subscriptions.features.plans.service import get_basic_plan, price_for_cycle, require_plan
from cargo_subscriptions.features.subscriptions import store
from cargo_subscriptions.features.subscriptions.effects import PostCommitEffects
from cargo_subscriptions.features.usage.service import get_monthly_usage
from cargo_subscriptions.features.users.service import ensure_user, sync_user_pointer
from cargo_subscriptions.models.subscription import (
    BillingCycle,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

PAYMENT_INSTRUCTIONS = {
    PaymentMethod.MPESA: {
        "method": "M-Pesa",
        "steps": [
            "Go to M-Pesa menu",
            "Select Lipa na M-Pesa, then Pay Bill",
            "Enter the business number shown on the pricing page",
            "Use your account email as the account number",
            "Enter the amount and confirm with your PIN",
        ],
    },
    PaymentMethod.BANK_TRANSFER: {
        "method": "Bank Transfer",
        "steps": [
            "Transfer the amount to the account shown on the pricing page",
            "Use your account email as the payment reference",
            "Keep the transfer receipt for verification",
        ],
    },
    PaymentMethod.CARD: {
        "method": "Card",
        "steps": [
            "Contact support to complete a card payment",
            "Quote the subscription id from this request",
        ],
    },
}


def ensure_basic_subscription(session: Session, user_id: str, now: Optional[datetime] = None) -> Subscription:
    """
    Return the user's active basic subscription, creating it if absent.

    The unique fallback_key column admits one active basic row per user, so a
    concurrent creator fails with IntegrityError instead of duplicating it.
    """
    now = normalize_now(now)
    existing = store.find_active_basic(session, user_id)
    if existing:
        return existing

    plan = get_basic_plan(session)
    ensure_user(session, user_id, now=now)
    sub = store.insert_subscription(
        session,
        user_id=user_id,
        plan=plan,
        status=SubscriptionStatus.ACTIVE,
        now=now,
        payment_status=PaymentStatus.COMPLETED.value,
        activated_at=now,
        expires_at=None,
        fallback_key=user_id,
    )
    logger.info("[subscriptions] basic subscription provisioned", extra={"user_id": user_id, "subscription_id": sub.id})
    return sub


def resolve_current_subscription(session: Session, user_id: str, now: Optional[datetime] = None) -> Subscription:
    """Current subscription inside the caller's transaction; never returns None."""
    now = normalize_now(now)
    current = store.find_current(session, user_id, now)
    if current is not None:
        return current
    sub = ensure_basic_subscription(session, user_id, now)
    sync_user_pointer(session, user_id, now)
    return sub


def get_current_active_subscription(user_id: str, *, now: Optional[datetime] = None) -> Subscription:
    """
    GetCurrentActiveSubscription: the subscription governing `user_id` now.

    Lazily provisions the basic fallback. A lost provisioning race is retried
    once, at which point the winner's row is visible.
    """
    now = normalize_now(now)
    try:
        with primary_transaction() as session:
            return resolve_current_subscription(session, user_id, now)
    except IntegrityError:
        logger.info("[subscriptions] basic provisioning raced, re-reading", extra={"user_id": user_id})
        with primary_transaction() as session:
            return resolve_current_subscription(session, user_id, now)


def request_subscription(
    user_id: str,
    plan_id: str,
    payment_method: Optional[str] = None,
    payment_details: Optional[Dict[str, Any]] = None,
    billing_cycle: str = "monthly",
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Handle a user's subscribe request.

    Paid plans create a `pending` subscription awaiting admin approval and set
    the user's pending marker. Free plans need no approval and resolve to the
    basic fallback.

    Raises:
        NotFoundError: plan missing or inactive
        ValidationError: bad payment method or billing cycle
        ConflictError: a request is already pending
    """
    now = normalize_now(now)
    effects = PostCommitEffects("subscribe")

    with primary_transaction() as session:
        plan = require_plan(plan_id, session, active_only=True)

        if plan.is_free:
            sub = resolve_current_subscription(session, user_id, now)
            return {"subscription": sub, "requires_payment": False, "payment_instructions": None}

        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(
                f"Invalid payment method: {payment_method!r} (expected one of {', '.join(m.value for m in PaymentMethod)})"
            )
        price, duration = price_for_cycle(plan, billing_cycle)

        pending = store.find_pending_for_user(session, user_id)
        if pending:
            raise ConflictError(
                "You already have a pending subscription request",
                code="subscription_pending",
            )

        # The safety net exists as soon as the user interacts with the engine
        ensure_basic_subscription(session, user_id, now)
        sub = store.insert_subscription(
            session,
            user_id=user_id,
            plan=plan,
            status=SubscriptionStatus.PENDING,
            now=now,
            price=price,
            duration_days=duration,
            billing_cycle=BillingCycle(billing_cycle).value,
            payment_method=method.value,
            payment_details=PaymentDetails.from_raw(payment_details),
        )
        sync_user_pointer(session, user_id, now)

        effects.notify(
            user_id=None,
            user_type=ADMIN_USER_TYPE,
            type="subscription_request",
            title="New Subscription Request",
            message=f"User {user_id} requested the {plan.name} ({sub.currency} {price:,.2f}, {billing_cycle}).",
            data={
                "subscription_id": sub.id,
                "user_id": user_id,
                "plan_id": plan.plan_id,
                "price": price,
                "payment_method": method.value,
                "billing_cycle": billing_cycle,
            },
            priority="medium",
            subscription_id=sub.id,
            now=now,
        )
        effects.audit(
            action="subscription_request_created",
            actor_id=user_id,
            target_id=sub.id,
            user_id=user_id,
            details={"plan_id": plan.plan_id, "price": price, "billing_cycle": billing_cycle, "payment_method": method.value},
            now=now,
        )

    effects.run()
    return {
        "subscription": sub,
        "requires_payment": True,
        "payment_instructions": PAYMENT_INSTRUCTIONS[method],
    }


def get_subscription_status(user_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Current subscription, days until expiry, usage and the last five history entries."""
    now = normalize_now(now)
    with primary_transaction() as session:
        sub = resolve_current_subscription(session, user_id, now)
        usage = get_monthly_usage(sub.id, now=now, session=session)
        history = store.list_history(session, sub.id, limit=5)
        pending = store.find_pending_for_user(session, user_id)

    max_loads = sub.features.max_loads
    if sub.features.unlimited_loads:
        remaining, percentage = -1, 0.0
    else:
        remaining = max(0, max_loads - usage.loads_this_month)
        percentage = round(100.0 * usage.loads_this_month / max_loads, 1) if max_loads else 100.0

    days_remaining = None
    if sub.expires_at is not None:
        days_remaining = max(0, (sub.expires_at - now).days)

    return {
        "subscription": sub,
        "pending_subscription_id": pending.id if pending else None,
        "days_remaining": days_remaining,
        "usage": {
            "loads_this_month": usage.loads_this_month,
            "max_loads": max_loads,
            "remaining": remaining,
            "percentage": percentage,
        },
        "history": history,
    }


def find_stale_pending(older_than_hours: Optional[int] = None, *, now: Optional[datetime] = None) -> List[Subscription]:
    """Pending requests nobody has acted on for `older_than_hours`."""
    hours = older_than_hours if older_than_hours is not None else settings.STALE_PENDING_HOURS
    cutoff = normalize_now(now) - timedelta(hours=hours)
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.status == SubscriptionStatus.PENDING.value)
            .where(subscriptions.c.requested_at < cutoff)
            .order_by(subscriptions.c.requested_at)
        ).fetchall()
    return [store.row_to_subscription(r) for r in rows]
