"""
cargo_subscriptions/features/quota/service.py

Load quota and feature access checks for the load-creation path.

Policy:
- Count at or over the plan's max_loads: deny (fail closed).
- The check itself cannot be resolved (store error, bad data): allow and log
  (fail open). Posting a load is the marketplace's core action, so an
  internal fault must not block it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging

from cargo_subscriptions.core.clock import normalize_now
from cargo_subscriptions.core.database import get_db_session
from cargo_subscriptions.core.errors import PermissionError, QuotaExceededError, ValidationError
from cargo_subscriptions.features.plans.service import DEFAULT_PLANS
from cargo_subscriptions.features.subscriptions.service import resolve_current_subscription
from cargo_subscriptions.features.usage.service import count_loads, resolve_usage_window
from cargo_subscriptions.models.plan import UNLIMITED, PlanFeatures
from cargo_subscriptions.models.subscription import BASIC_PLAN_ID

logger = logging.getLogger(__name__)

# Boolean plan features that can gate an action
GATED_FEATURES = ("priority_support", "advanced_analytics", "bulk_operations", "api_access", "dedicated_manager")


@dataclass(frozen=True)
class LoadQuotaDecision:
    allowed: bool
    remaining: int  # -1 when unlimited
    max_loads: int
    used: Optional[int]
    plan_id: Optional[str]
    subscription_id: Optional[str] = None
    degraded: bool = False  # True when the decision came from the fail-open path


def _fail_open_decision() -> LoadQuotaDecision:
    basic_max = DEFAULT_PLANS[BASIC_PLAN_ID]["features"]["max_loads"]
    return LoadQuotaDecision(
        allowed=True,
        remaining=basic_max,
        max_loads=basic_max,
        used=None,
        plan_id=None,
        degraded=True,
    )


def _evaluate(user_id: str, now: datetime) -> LoadQuotaDecision:
    with get_db_session() as session:
        sub = resolve_current_subscription(session, user_id, now)
        max_loads = sub.features.max_loads
        if max_loads == UNLIMITED:
            return LoadQuotaDecision(
                allowed=True, remaining=UNLIMITED, max_loads=UNLIMITED, used=None,
                plan_id=sub.plan_id, subscription_id=sub.id,
            )
        window = resolve_usage_window(now, sub.usage.last_usage_reset)
        used = count_loads(session, user_id, window.window_start, now)

    return LoadQuotaDecision(
        allowed=used < max_loads,
        remaining=max(0, max_loads - used),
        max_loads=max_loads,
        used=used,
        plan_id=sub.plan_id,
        subscription_id=sub.id,
    )


def can_create_load(user_id: str, *, now: Optional[datetime] = None) -> LoadQuotaDecision:
    """
    CanCreateLoad: may `user_id` post another load this calendar month?

    Lazily provisions the basic subscription. Never raises: an internal error
    yields an allowed, degraded decision.
    """
    now = normalize_now(now)
    try:
        decision = _evaluate(user_id, now)
    except Exception as exc:
        logger.error(
            "[quota] load quota check failed, allowing load creation",
            exc_info=True,
            extra={"user_id": user_id, "error": str(exc)},
        )
        return _fail_open_decision()

    if not decision.allowed:
        logger.info(
            "[quota] load quota reached",
            extra={"user_id": user_id, "plan_id": decision.plan_id, "used": decision.used, "max_loads": decision.max_loads},
        )
    return decision


def enforce_load_quota(user_id: str, *, now: Optional[datetime] = None) -> LoadQuotaDecision:
    """Like can_create_load, but a denial raises QuotaExceededError."""
    decision = can_create_load(user_id, now=now)
    if not decision.allowed:
        raise QuotaExceededError(
            f"Monthly load limit reached ({decision.max_loads} loads on the {decision.plan_id} plan). "
            "Upgrade your plan to post more loads.",
            code="load_quota_exceeded",
        )
    return decision


def check_feature_access(user_id: str, feature: str, *, now: Optional[datetime] = None) -> bool:
    """Whether the user's current subscription grants boolean `feature`. Errors propagate."""
    if feature not in GATED_FEATURES:
        raise ValidationError(f"Unknown feature: {feature!r}", code="unknown_feature")
    now = normalize_now(now)
    with get_db_session() as session:
        features: PlanFeatures = resolve_current_subscription(session, user_id, now).features
    return bool(getattr(features, feature))


def require_feature(user_id: str, feature: str, *, now: Optional[datetime] = None) -> None:
    if not check_feature_access(user_id, feature, now=now):
        raise PermissionError(
            f"Your current plan does not include {feature.replace('_', ' ')}. Upgrade to access this feature.",
            code="feature_not_available",
        )
