"""
cargo_subscriptions/features/subscriptions/lifecycle.py

Subscription lifecycle state machine.

Pure logic, no I/O:
- which actions are allowed from which status, and where they lead
- derived timestamps (activation, expiry, extension, adjustment)
- admin input validation
- the user-facing message for each transition
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Optional, Tuple

from cargo_subscriptions.core.clock import ensure_utc
from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.errors import InvalidStateTransitionError, ValidationError
from cargo_subscriptions.models.subscription import Subscription, SubscriptionStatus

S = SubscriptionStatus

TERMINAL_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {S.EXPIRED, S.REJECTED, S.CANCELLED, S.REPLACED}
)


@dataclass(frozen=True)
class Transition:
    allowed_from: FrozenSet[SubscriptionStatus]
    target: Optional[SubscriptionStatus]  # None: status unchanged


TRANSITIONS: Dict[str, Transition] = {
    "approve": Transition(frozenset({S.PENDING}), S.ACTIVE),
    "reject": Transition(frozenset({S.PENDING}), S.REJECTED),
    "cancel": Transition(frozenset({S.ACTIVE}), S.CANCELLED),
    "expire": Transition(frozenset({S.ACTIVE}), S.EXPIRED),
    "replace": Transition(frozenset({S.ACTIVE}), S.REPLACED),
    # Extending a lapsed subscription reactivates it
    "extend": Transition(frozenset({S.ACTIVE, S.EXPIRED}), S.ACTIVE),
    "adjust_duration": Transition(frozenset({S.ACTIVE}), None),
    "update": Transition(frozenset({S.PENDING, S.ACTIVE}), None),
}

# Actions the basic (free) subscription is immune to
BASIC_IMMUNE_ACTIONS = frozenset({"cancel", "extend", "adjust_duration", "expire", "replace"})

REJECTION_CATEGORIES = ("payment_failed", "invalid_details", "fraud_suspected", "other")
REJECTION_MESSAGES = {
    "payment_failed": "Payment could not be verified",
    "invalid_details": "Payment details invalid",
    "fraud_suspected": "Fraud suspected",
}

CANCELLATION_CATEGORIES = ("user_request", "payment_failed", "policy_violation", "technical_issue", "other")
COMPENSATION_TYPES = ("goodwill", "service_issue", "promotional", "other")


def ensure_transition_allowed(
    action: str,
    subscription: Subscription,
) -> Optional[SubscriptionStatus]:
    """
    Validate `action` against the subscription's current status.

    Returns:
        The target status (None when the action keeps the status).

    Raises:
        InvalidStateTransitionError
    """
    transition = TRANSITIONS.get(action)
    if transition is None:
        raise ValueError(f"Unknown lifecycle action: {action}")

    current = SubscriptionStatus(subscription.status)
    if subscription.is_basic and action in BASIC_IMMUNE_ACTIONS:
        raise InvalidStateTransitionError(
            f"Cannot {action.replace('_', ' ')} the basic plan subscription",
            current_status=current.value,
            action=action,
        )
    if current not in transition.allowed_from:
        allowed = ", ".join(sorted(s.value for s in transition.allowed_from))
        raise InvalidStateTransitionError(
            f"Cannot {action.replace('_', ' ')} a subscription that is {current.value} (requires {allowed})",
            current_status=current.value,
            action=action,
        )
    return transition.target


def is_terminal(status: Any) -> bool:
    return SubscriptionStatus(status) in TERMINAL_STATUSES


# Derived timestamps

def compute_activation(now: datetime, duration_days: int) -> Tuple[datetime, datetime]:
    """(activated_at, expires_at); expiry always counts from activation, never from the request."""
    activated_at = ensure_utc(now)
    return activated_at, activated_at + timedelta(days=duration_days)


def compute_extension(subscription: Subscription, days: int, now: datetime) -> datetime:
    """
    New expiry after extending by `days`.

    Active: added to the existing expiry. Expired: counted from now, since the
    paid-for period already lapsed.
    """
    now = ensure_utc(now)
    if SubscriptionStatus(subscription.status) == S.EXPIRED or subscription.expires_at is None:
        return now + timedelta(days=days)
    return ensure_utc(subscription.expires_at) + timedelta(days=days)


def compute_adjustment(subscription: Subscription, days: int) -> datetime:
    """Shift the existing expiry of an active subscription by `days` (may be negative)."""
    if subscription.expires_at is None:
        raise ValidationError("Subscription has no expiry to adjust")
    new_expiry = ensure_utc(subscription.expires_at) + timedelta(days=days)
    if subscription.activated_at and new_expiry <= ensure_utc(subscription.activated_at):
        raise ValidationError("Adjustment would end the subscription before it was activated")
    return new_expiry


# Admin input validation

def validate_custom_duration(custom_duration: Optional[int]) -> Optional[int]:
    if custom_duration is None:
        return None
    if isinstance(custom_duration, bool) or not isinstance(custom_duration, int):
        raise ValidationError("Custom duration must be a whole number of days")
    if not 1 <= custom_duration <= settings.MAX_CUSTOM_DURATION_DAYS:
        raise ValidationError(
            f"Custom duration must be between 1 and {settings.MAX_CUSTOM_DURATION_DAYS} days"
        )
    return custom_duration


def validate_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    if len(notes) > settings.ADMIN_NOTES_MAX_LENGTH:
        raise ValidationError(f"Notes cannot exceed {settings.ADMIN_NOTES_MAX_LENGTH} characters")
    return notes


def validate_extension_days(days: int) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
        raise ValidationError("Extension days must be a positive whole number")
    if days > settings.MAX_ADJUSTMENT_DAYS:
        raise ValidationError(f"Extension cannot exceed {settings.MAX_ADJUSTMENT_DAYS} days")
    return days


def validate_adjustment_days(days: int) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or days == 0:
        raise ValidationError("Adjustment days must be a non-zero whole number")
    if abs(days) > settings.MAX_ADJUSTMENT_DAYS:
        raise ValidationError(f"Adjustment cannot exceed {settings.MAX_ADJUSTMENT_DAYS} days")
    return days


def validate_choice(value: str, choices, label: str) -> str:
    if value not in choices:
        raise ValidationError(f"Invalid {label}: {value!r} (expected one of {', '.join(choices)})")
    return value


def validate_reason(reason: Optional[str], label: str = "reason") -> str:
    if not reason or not reason.strip():
        raise ValidationError(f"A {label} is required")
    return reason.strip()


def rejection_message(category: str, reason: str) -> str:
    """User-facing rejection text; only `other` echoes the admin's own words."""
    if category == "other":
        return reason
    return REJECTION_MESSAGES[category]


# User-facing notifications, one per transition

@dataclass(frozen=True)
class NotificationDraft:
    type: str
    title: str
    message: str
    priority: str = "medium"
    data: Dict[str, Any] = field(default_factory=dict)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value else None


def approved_notification(sub: Subscription) -> NotificationDraft:
    return NotificationDraft(
        type="subscription_approved",
        title="Subscription Approved",
        message=f"Your {sub.plan_name} subscription is now active.",
        priority="high",
        data={
            "subscription_id": sub.id,
            "plan_id": sub.plan_id,
            "activated_at": _iso(sub.activated_at),
            "expires_at": _iso(sub.expires_at),
        },
    )


def rejected_notification(sub: Subscription, message: str) -> NotificationDraft:
    reason = message.rstrip(". ")
    return NotificationDraft(
        type="subscription_rejected",
        title="Subscription Request Declined",
        message=f"Your {sub.plan_name} request was declined. Reason: {reason}.",
        priority="high",
        data={"subscription_id": sub.id, "plan_id": sub.plan_id, "reason": message},
    )


def replaced_notification(sub: Subscription, successor: Subscription) -> NotificationDraft:
    return NotificationDraft(
        type="subscription_replaced",
        title="Subscription Replaced",
        message=f"Your {sub.plan_name} subscription has been replaced by {successor.plan_name}.",
        data={"subscription_id": sub.id, "plan_id": sub.plan_id, "replaced_by": successor.id},
    )


def cancelled_notification(sub: Subscription, refund_amount: float) -> NotificationDraft:
    message = f"Your {sub.plan_name} subscription has been cancelled."
    if refund_amount:
        message += f" A refund of {sub.currency} {refund_amount:,.2f} will be processed."
    return NotificationDraft(
        type="subscription_cancelled",
        title="Subscription Cancelled",
        message=message,
        priority="high",
        data={"subscription_id": sub.id, "plan_id": sub.plan_id, "refund_amount": refund_amount},
    )


def expired_notification(sub: Subscription) -> NotificationDraft:
    return NotificationDraft(
        type="subscription_expired",
        title="Subscription Expired",
        message=f"Your {sub.plan_name} subscription has expired. Upgrade to continue using premium features.",
        priority="high",
        data={
            "subscription_id": sub.id,
            "plan_id": sub.plan_id,
            "expired_at": _iso(sub.expires_at),
            "action_required": True,
            "action_url": "/pricing",
        },
    )


def extended_notification(sub: Subscription, days: int, reactivated: bool) -> NotificationDraft:
    verb = "reactivated and extended" if reactivated else "extended"
    return NotificationDraft(
        type="subscription_extended",
        title="Subscription Extended",
        message=f"Your {sub.plan_name} subscription has been {verb} by {days} days.",
        priority="medium",
        data={"subscription_id": sub.id, "days": days, "expires_at": _iso(sub.expires_at)},
    )


def adjusted_notification(sub: Subscription, days: int) -> NotificationDraft:
    direction = "extended" if days > 0 else "shortened"
    return NotificationDraft(
        type="subscription_adjusted",
        title="Subscription Duration Updated",
        message=f"Your {sub.plan_name} subscription has been {direction} by {abs(days)} days.",
        priority="medium",
        data={"subscription_id": sub.id, "days": days, "expires_at": _iso(sub.expires_at)},
    )


def updated_notification(sub: Subscription) -> NotificationDraft:
    return NotificationDraft(
        type="subscription_updated",
        title="Subscription Updated",
        message=f"Your {sub.plan_name} subscription details were updated by an administrator.",
        priority="low",
        data={"subscription_id": sub.id, "expires_at": _iso(sub.expires_at)},
    )


def reminder_notification(sub: Subscription, days: int) -> NotificationDraft:
    return NotificationDraft(
        type="subscription_reminder",
        title=f"Subscription Expires in {days} Days",
        message=(
            f"Your {sub.plan_name} subscription expires in {days} days. "
            "Renew now to avoid interruption of service."
        ),
        priority="high" if days <= 3 else "medium",
        data={
            "subscription_id": sub.id,
            "plan_id": sub.plan_id,
            "days_remaining": days,
            "expires_at": _iso(sub.expires_at),
            "action_required": True,
            "action_url": "/pricing",
        },
    )
