import logging
from typing import Any, Dict, Optional
from datetime import datetime

from sqlalchemy import insert, select

from cargo_subscriptions.core.clock import ensure_utc, normalize_now
from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.database import audit_logs, get_db_session
from cargo_subscriptions.core.logging import get_correlation_id
from cargo_subscriptions.models.notification import AuditEntry

logger = logging.getLogger(__name__)


def _safe_truncate(value: Any, limit: int = 500):
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {k: _safe_truncate(v, limit) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_safe_truncate(v, limit) for v in value]
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def record_audit(
    *,
    action: str,
    actor_id: str,
    target_id: Optional[str] = None,
    target_type: str = "subscription",
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[AuditEntry]:
    """Record one audit entry for a state-changing operation.

    Notes:
    - Respects AUDIT_ENABLED (returns None when disabled).
    - Detail values are truncated; datetimes are stored as ISO strings.
    - Write failures propagate; callers run this as a post-commit effect.
    """
    if not settings.AUDIT_ENABLED:
        return None

    entry = AuditEntry(
        action=action,
        actor_id=actor_id,
        target_type=target_type,
        target_id=target_id,
        user_id=user_id,
        details=_safe_truncate(details or {}),
        request_id=request_id or get_correlation_id(),
        created_at=normalize_now(now),
    )
    with get_db_session() as session:
        session.execute(insert(audit_logs).values(**entry.model_dump(mode="json", exclude={"created_at"}), created_at=entry.created_at))

    logger.debug("[audit] recorded", extra={"action": action, "target_id": target_id})
    return entry


def list_audit_entries(*, target_id: Optional[str] = None, action: Optional[str] = None, limit: int = 100):
    limit = min(limit, 500)
    with get_db_session() as session:
        query = select(audit_logs)
        if target_id:
            query = query.where(audit_logs.c.target_id == target_id)
        if action:
            query = query.where(audit_logs.c.action == action)
        rows = session.execute(
            query.order_by(audit_logs.c.created_at.desc(), audit_logs.c.id.desc()).limit(limit)
        ).fetchall()
    return [
        AuditEntry(
            action=r.action,
            actor_id=r.actor_id,
            target_type=r.target_type,
            target_id=r.target_id,
            user_id=r.user_id,
            details=r.details or {},
            request_id=r.request_id,
            created_at=ensure_utc(r.created_at),
        )
        for r in rows
    ]
