"""
cargo_subscriptions/features/notifications/service.py

Notification sink.

The engine only writes notifications; delivery and read-state belong to the
notification collaborator. The one read this module does is the dedupe
existence check the reminder sweep needs.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from cargo_subscriptions.core.clock import ensure_utc, normalize_now
from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.database import get_db_session, notifications, session_scope
from cargo_subscriptions.models.notification import Notification

logger = logging.getLogger(__name__)

ADMIN_USER_TYPE = "admin"
CARGO_OWNER_USER_TYPE = "cargo_owner"
PRIORITIES = ("low", "medium", "high")


def emit_notification(
    *,
    user_id: Optional[str],
    user_type: str,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    priority: str = "medium",
    subscription_id: Optional[str] = None,
    dedupe_key: Optional[str] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Notification:
    """
    Write one notification.

    `user_id` is None for admin-facing notifications (user_type="admin").
    Failures propagate; the engine calls this as a post-commit effect.
    """
    if priority not in PRIORITIES:
        priority = "medium"
    notification = Notification(
        user_id=user_id,
        user_type=user_type,
        type=type,
        title=title,
        message=message,
        data=data or {},
        priority=priority,
        subscription_id=subscription_id,
        dedupe_key=dedupe_key,
        created_at=normalize_now(now),
    )
    values = notification.model_dump(exclude={"id", "created_at", "data"})
    values["data"] = notification.model_dump(mode="json", include={"data"})["data"]
    with session_scope(session) as s:
        result = s.execute(insert(notifications).values(**values, created_at=notification.created_at))
        new_id = result.inserted_primary_key[0] if result.inserted_primary_key else None

    logger.info(
        "[notifications] emitted",
        extra={"type": type, "user_id": user_id, "subscription_id": subscription_id, "priority": priority},
    )
    return notification.model_copy(update={"id": new_id})


def has_recent_notification(session: Session, dedupe_key: str, since: datetime) -> bool:
    """True when a notification with `dedupe_key` was written at or after `since`."""
    row = session.execute(
        select(notifications.c.id)
        .where(notifications.c.dedupe_key == dedupe_key)
        .where(notifications.c.created_at >= ensure_utc(since))
        .limit(1)
    ).first()
    return row is not None


def cleanup_read_notifications(
    *,
    retention_days: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """
    Hard-delete read notifications older than the retention window.

    Unread notifications are never touched regardless of age.
    """
    days = retention_days if retention_days is not None else int(settings.NOTIFICATION_RETENTION_DAYS or 90)
    cutoff = normalize_now(now) - timedelta(days=days)

    condition = (notifications.c.is_read.is_(True)) & (notifications.c.created_at < cutoff)
    with get_db_session() as session:
        to_prune = session.execute(
            select(func.count()).select_from(notifications).where(condition)
        ).scalar() or 0

        deleted = 0
        if not dry_run and to_prune:
            result = session.execute(delete(notifications).where(condition))
            deleted = result.rowcount or 0

    logger.info(
        "[cleanup] read notification retention",
        extra={"retention_days": days, "dry_run": dry_run, "candidates": to_prune, "deleted": deleted},
    )
    return {"retention_days": days, "dry_run": dry_run, "candidates": to_prune, "deleted": deleted}
