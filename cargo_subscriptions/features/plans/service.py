"""
cargo_subscriptions/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (basic, pro, business)
- Catalog lookups (GetPlan / ListActivePlans)
- Billing-cycle pricing
- Administrative plan edits (audited; existing subscriptions keep their snapshot)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from cargo_subscriptions.core.clock import ensure_utc, normalize_now
from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.database import plans, session_scope
from cargo_subscriptions.core.errors import NotFoundError, ValidationError
from cargo_subscriptions.features.audit.service import record_audit
from cargo_subscriptions.models.plan import Plan, PlanFeatures
from cargo_subscriptions.models.subscription import BASIC_PLAN_ID, BillingCycle

logger = logging.getLogger(__name__)


# Default plan configurations
DEFAULT_PLANS = {
    "basic": {
        "name": "Basic Plan",
        "description": "Perfect for small businesses getting started",
        "price": 0,
        "duration_days": 30,
        "display_order": 1,
        "features": {
            "max_loads": 3,
            "priority_support": False,
            "advanced_analytics": False,
            "bulk_operations": False,
            "api_access": False,
            "dedicated_manager": False,
        },
    },
    "pro": {
        "name": "Pro Plan",
        "description": "Ideal for growing businesses with regular shipments",
        "price": 999,
        "duration_days": 30,
        "display_order": 2,
        "features": {
            "max_loads": 25,
            "priority_support": True,
            "advanced_analytics": True,
            "bulk_operations": False,
            "api_access": False,
            "dedicated_manager": False,
        },
    },
    "business": {
        "name": "Business Plan",
        "description": "For large enterprises with high volume needs",
        "price": 2499,
        "duration_days": 30,
        "display_order": 3,
        "features": {
            "max_loads": 100,
            "priority_support": True,
            "advanced_analytics": True,
            "bulk_operations": True,
            "api_access": True,
            "dedicated_manager": True,
        },
    },
}

CYCLE_MULTIPLIERS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}

# Fields an administrator may change through update_plan
EDITABLE_FIELDS = {"name", "description", "price", "duration_days", "features", "is_active", "is_visible", "display_order"}


def _row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        description=row.description,
        price=row.price,
        currency=row.currency,
        duration_days=row.duration_days,
        features=PlanFeatures(**row.features),
        is_active=row.is_active,
        is_visible=row.is_visible,
        display_order=row.display_order,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def default_plan(plan_id: str) -> Plan:
    """Build a plan straight from DEFAULT_PLANS (used when the catalog is unseeded)."""
    config = DEFAULT_PLANS[plan_id]
    return Plan(
        plan_id=plan_id,
        name=config["name"],
        description=config["description"],
        price=config["price"],
        currency=settings.DEFAULT_CURRENCY,
        duration_days=config["duration_days"],
        features=PlanFeatures(**config["features"]),
        display_order=config["display_order"],
    )


def seed_plans(now: Optional[datetime] = None) -> int:
    """
    Seed default plans into database (idempotent).

    Existing rows are left untouched so administrative edits survive restarts.

    Returns:
        Number of plans inserted
    """
    ts = normalize_now(now)
    inserted = 0
    with session_scope() as session:
        for plan_id, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
            ).first()
            if existing:
                continue
            session.execute(
                insert(plans).values(
                    plan_id=plan_id,
                    name=config["name"],
                    description=config["description"],
                    price=config["price"],
                    currency=settings.DEFAULT_CURRENCY,
                    duration_days=config["duration_days"],
                    features=dict(config["features"]),
                    is_active=True,
                    is_visible=True,
                    display_order=config["display_order"],
                    created_at=ts,
                    updated_at=ts,
                )
            )
            inserted += 1
    if inserted:
        logger.info("[plans] seeded default plans", extra={"inserted": inserted})
    return inserted


def get_plan(plan_id: str, session: Optional[Session] = None) -> Optional[Plan]:
    """Get a plan by id, or None if it is not in the catalog."""
    with session_scope(session) as s:
        row = s.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
    return _row_to_plan(row) if row else None


def require_plan(plan_id: str, session: Optional[Session] = None, *, active_only: bool = False) -> Plan:
    plan = get_plan(plan_id, session)
    if plan is None or (active_only and not plan.is_active):
        raise NotFoundError(f"Plan not found: {plan_id}", code="plan_not_found")
    return plan


def get_basic_plan(session: Optional[Session] = None) -> Plan:
    """The fallback plan; falls back to the built-in definition when unseeded."""
    return get_plan(BASIC_PLAN_ID, session) or default_plan(BASIC_PLAN_ID)


def list_active_plans(session: Optional[Session] = None, *, include_hidden: bool = False) -> List[Plan]:
    with session_scope(session) as s:
        query = select(plans).where(plans.c.is_active.is_(True))
        if not include_hidden:
            query = query.where(plans.c.is_visible.is_(True))
        rows = s.execute(query.order_by(plans.c.display_order, plans.c.plan_id)).fetchall()
    return [_row_to_plan(r) for r in rows]


def price_for_cycle(plan: Plan, billing_cycle: Any) -> Tuple[float, int]:
    """
    Price and duration (days) of one period of `plan` under `billing_cycle`.

    Quarterly and yearly periods multiply the monthly figures and apply the
    configured discount.
    """
    try:
        cycle = BillingCycle(billing_cycle)
    except ValueError:
        raise ValidationError(f"Unsupported billing cycle: {billing_cycle}", code="invalid_billing_cycle")

    multiplier = CYCLE_MULTIPLIERS[cycle]
    discount = 0.0
    if cycle == BillingCycle.QUARTERLY:
        discount = settings.QUARTERLY_DISCOUNT
    elif cycle == BillingCycle.YEARLY:
        discount = settings.YEARLY_DISCOUNT

    price = round(plan.price * multiplier * (1 - discount), 2)
    return price, plan.duration_days * multiplier


def update_plan(plan_id: str, changes: Dict[str, Any], admin_id: str, *, now: Optional[datetime] = None) -> Plan:
    """
    Apply an administrative edit to a catalog entry.

    Subscriptions already approved keep the feature snapshot they were
    granted; only future approvals see the new values.

    Raises:
        NotFoundError: unknown plan
        ValidationError: unknown field or invalid value
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")

    values = dict(changes)
    if "features" in values:
        values["features"] = PlanFeatures(**values["features"]).model_dump()
    if "price" in values and values["price"] < 0:
        raise ValidationError("Price cannot be negative")
    if "duration_days" in values and values["duration_days"] <= 0:
        raise ValidationError("Duration must be positive")
    if plan_id == BASIC_PLAN_ID and values.get("is_active") is False:
        raise ValidationError("The basic plan cannot be deactivated")

    ts = normalize_now(now)
    with session_scope() as session:
        before = require_plan(plan_id, session)
        session.execute(
            update(plans).where(plans.c.plan_id == plan_id).values(**values, updated_at=ts)
        )
        after = require_plan(plan_id, session)

    record_audit(
        action="plan_updated",
        actor_id=admin_id,
        target_type="plan",
        target_id=plan_id,
        details={
            "changes": sorted(changes),
            "before": before.model_dump(mode="json", include=set(changes)),
            "after": after.model_dump(mode="json", include=set(changes)),
        },
        now=ts,
    )
    return after
