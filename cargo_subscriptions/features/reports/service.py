"""
cargo_subscriptions/features/reports/service.py

Monthly subscription report: the prior calendar month's requests and
completed-payment revenue, broken down by plan.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from sqlalchemy import func, select

from cargo_subscriptions.core.clock import normalize_now, previous_month_bounds, to_business
from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.database import get_db_session, subscriptions
from cargo_subscriptions.features.notifications.service import ADMIN_USER_TYPE, emit_notification
from cargo_subscriptions.models.subscription import PaymentStatus

logger = logging.getLogger(__name__)


def build_monthly_report(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Aggregate subscriptions requested during the calendar month before `now`."""
    now = normalize_now(now)
    start, end = previous_month_bounds(now)
    completed = subscriptions.c.payment_status == PaymentStatus.COMPLETED.value

    with get_db_session() as session:
        rows = session.execute(
            select(
                subscriptions.c.plan_id,
                func.count().label("count"),
                func.count().filter(completed).label("completed"),
                func.coalesce(func.sum(subscriptions.c.price).filter(completed), 0).label("revenue"),
            )
            .where(subscriptions.c.requested_at >= start)
            .where(subscriptions.c.requested_at < end)
            .group_by(subscriptions.c.plan_id)
        ).fetchall()

    by_plan = {
        r.plan_id: {"count": r.count, "completed": r.completed, "revenue": float(r.revenue or 0)}
        for r in sorted(rows, key=lambda r: r.plan_id)
    }
    local_start = to_business(start)
    return {
        "period": {
            "label": local_start.strftime("%B %Y"),
            "start": start.isoformat(),
            "end": end.isoformat(),
        },
        "summary": {
            "total_subscriptions": sum(p["count"] for p in by_plan.values()),
            "completed_subscriptions": sum(p["completed"] for p in by_plan.values()),
            "total_revenue": round(sum(p["revenue"] for p in by_plan.values()), 2),
            "currency": settings.DEFAULT_CURRENCY,
            "by_plan": by_plan,
        },
    }


def send_monthly_report(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Build the report and emit exactly one admin-facing summary notification."""
    now = normalize_now(now)
    report = build_monthly_report(now)
    summary = report["summary"]
    emit_notification(
        user_id=None,
        user_type=ADMIN_USER_TYPE,
        type="system_update",
        title="Monthly Subscription Report",
        message=(
            f"{report['period']['label']}: {summary['total_subscriptions']} subscriptions, "
            f"{summary['currency']} {summary['total_revenue']:,.2f} revenue."
        ),
        data=report,
        priority="medium",
        dedupe_key=f"monthly_report:{report['period']['start']}",
        now=now,
    )
    logger.info(
        "[reports] monthly subscription report sent",
        extra={"period": report["period"]["label"], "total": summary["total_subscriptions"], "revenue": summary["total_revenue"]},
    )
    return report
