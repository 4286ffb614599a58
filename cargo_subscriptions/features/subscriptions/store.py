"""
cargo_subscriptions/features/subscriptions/store.py

Subscription Store access.

Every lifecycle mutation goes through apply_transition, a conditional UPDATE
keyed on (id, status, version). A caller holding a stale read loses the race
with AlreadyProcessedError instead of applying its effects twice.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from cargo_subscriptions.core.clock import ensure_utc
from cargo_subscriptions.core.errors import AlreadyProcessedError, NotFoundError
from cargo_subscriptions.core.database import subscription_history, subscriptions
from cargo_subscriptions.features.subscriptions.lifecycle import ensure_transition_allowed
from cargo_subscriptions.models.plan import Plan, PlanFeatures
from cargo_subscriptions.models.subscription import (
    BASIC_PLAN_ID,
    HistoryEntry,
    PaymentDetails,
    Subscription,
    SubscriptionStatus,
    UsageSnapshot,
)

_DATETIME_FIELDS = (
    "requested_at", "activated_at", "expires_at", "approved_at", "rejected_at",
    "cancelled_at", "deactivated_at", "created_at", "updated_at",
)


def new_subscription_id() -> str:
    return str(uuid4())


def row_to_subscription(row) -> Subscription:
    data = dict(row._mapping)
    for key in _DATETIME_FIELDS:
        data[key] = ensure_utc(data.get(key))
    data["features"] = PlanFeatures(**data["features"])
    data["payment_details"] = PaymentDetails.from_raw(data.get("payment_details"))
    data["usage"] = UsageSnapshot(
        loads_this_month=data.pop("loads_this_month") or 0,
        last_usage_reset=ensure_utc(data.pop("last_usage_reset")),
    )
    data.pop("fallback_key", None)
    return Subscription(**data)


def _db_values(values: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, PaymentDetails):
            value = value.model_dump(mode="json")
        elif isinstance(value, PlanFeatures):
            value = value.model_dump()
        elif isinstance(value, datetime):
            value = ensure_utc(value)
        out[key] = value
    return out


def get_subscription(session: Session, subscription_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.id == subscription_id)
    ).first()
    return row_to_subscription(row) if row else None


def require_subscription(session: Session, subscription_id: str) -> Subscription:
    sub = get_subscription(session, subscription_id)
    if sub is None:
        raise NotFoundError(f"Subscription not found: {subscription_id}", code="subscription_not_found")
    return sub


def insert_subscription(
    session: Session,
    *,
    user_id: str,
    plan: Plan,
    status: SubscriptionStatus,
    now: datetime,
    price: Optional[float] = None,
    duration_days: Optional[int] = None,
    billing_cycle: str = "monthly",
    payment_method: Optional[str] = None,
    payment_details: Optional[PaymentDetails] = None,
    payment_status: str = "pending",
    activated_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    fallback_key: Optional[str] = None,
) -> Subscription:
    """Insert a new subscription row with a snapshot of the plan's features."""
    subscription_id = new_subscription_id()
    session.execute(
        insert(subscriptions).values(
            **_db_values({
                "id": subscription_id,
                "user_id": user_id,
                "plan_id": plan.plan_id,
                "plan_name": plan.name,
                "price": plan.price if price is None else price,
                "currency": plan.currency,
                "billing_cycle": billing_cycle,
                "duration_days": plan.duration_days if duration_days is None else duration_days,
                "features": plan.features,
                "status": status,
                "payment_method": payment_method,
                "payment_status": payment_status,
                "payment_details": payment_details or PaymentDetails(),
                "requested_at": now,
                "activated_at": activated_at,
                "expires_at": expires_at,
                "loads_this_month": 0,
                "last_usage_reset": now,
                "version": 1,
                "fallback_key": fallback_key,
                "created_at": now,
                "updated_at": now,
            })
        )
    )
    return require_subscription(session, subscription_id)


def apply_transition(
    session: Session,
    subscription: Subscription,
    action: str,
    values: Dict[str, Any],
    *,
    now: datetime,
) -> Subscription:
    """
    Validate `action` and write it with a conditional update.

    Raises:
        InvalidStateTransitionError: the status read by the caller does not permit `action`
        AlreadyProcessedError: the row changed since the caller read it
    """
    target = ensure_transition_allowed(action, subscription)
    changes = dict(values)
    if target is not None:
        changes["status"] = target
    changes["version"] = subscription.version + 1
    changes["updated_at"] = now

    result = session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == subscription.id)
        .where(subscriptions.c.status == SubscriptionStatus(subscription.status).value)
        .where(subscriptions.c.version == subscription.version)
        .values(**_db_values(changes))
    )
    if result.rowcount != 1:
        raise AlreadyProcessedError(
            f"Subscription {subscription.id} was modified by another operation",
            code="already_processed",
        )
    return require_subscription(session, subscription.id)


def find_active_for_user(
    session: Session,
    user_id: str,
    *,
    paid_only: bool = False,
    exclude_id: Optional[str] = None,
) -> List[Subscription]:
    query = (
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
    )
    if paid_only:
        query = query.where(subscriptions.c.plan_id != BASIC_PLAN_ID)
    if exclude_id:
        query = query.where(subscriptions.c.id != exclude_id)
    rows = session.execute(
        query.order_by(subscriptions.c.activated_at.desc(), subscriptions.c.id)
    ).fetchall()
    return [row_to_subscription(r) for r in rows]


def find_active_basic(session: Session, user_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .where(subscriptions.c.plan_id == BASIC_PLAN_ID)
        .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
        .limit(1)
    ).first()
    return row_to_subscription(row) if row else None


def find_pending_for_user(session: Session, user_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .where(subscriptions.c.status == SubscriptionStatus.PENDING.value)
        .order_by(subscriptions.c.requested_at.desc())
        .limit(1)
    ).first()
    return row_to_subscription(row) if row else None


def demote_active_paid(session: Session, user_id: str, *, replaced_by: str, now: datetime) -> List[Subscription]:
    """Move every other active non-basic subscription of `user_id` to replaced."""
    demoted = []
    for other in find_active_for_user(session, user_id, paid_only=True, exclude_id=replaced_by):
        demoted.append(
            apply_transition(
                session,
                other,
                "replace",
                {"replaced_by": replaced_by, "deactivated_at": now},
                now=now,
            )
        )
    return demoted


def append_history(session: Session, entry: HistoryEntry) -> None:
    session.execute(insert(subscription_history).values(**_db_values(entry.model_dump())))


def list_history(session: Session, subscription_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
    query = (
        select(subscription_history)
        .where(subscription_history.c.subscription_id == subscription_id)
        .order_by(subscription_history.c.performed_at.desc(), subscription_history.c.id.desc())
    )
    if limit:
        query = query.limit(limit)
    rows = session.execute(query).fetchall()
    return [
        HistoryEntry(
            subscription_id=r.subscription_id,
            action=r.action,
            days=r.days,
            previous_expires_at=ensure_utc(r.previous_expires_at),
            new_expires_at=ensure_utc(r.new_expires_at),
            previous_status=r.previous_status,
            reason=r.reason,
            notes=r.notes,
            compensation_type=r.compensation_type,
            performed_by=r.performed_by,
            performed_at=ensure_utc(r.performed_at),
        )
        for r in rows
    ]


def write_usage(session: Session, subscription_id: str, usage: UsageSnapshot) -> None:
    """Persist the usage sub-document. Not a lifecycle change: version is untouched."""
    session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == subscription_id)
        .values(
            loads_this_month=usage.loads_this_month,
            last_usage_reset=ensure_utc(usage.last_usage_reset),
        )
    )


def find_current(session: Session, user_id: str, now: datetime) -> Optional[Subscription]:
    """
    The subscription that currently governs `user_id`.

    An active paid subscription that has not passed its expiry wins; otherwise
    the active basic one. Returns None when the user has neither.
    """
    now = ensure_utc(now)
    for sub in find_active_for_user(session, user_id, paid_only=True):
        if sub.expires_at is None or sub.expires_at > now:
            return sub
    return find_active_basic(session, user_id)
