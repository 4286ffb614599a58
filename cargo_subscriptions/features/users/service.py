"""
cargo_subscriptions/features/users/service.py

User subscription pointer.

The pointer on the user record (plan, status, expiry, current and pending
subscription ids) is a cache. It is always re-derivable from the
Subscription Store: lifecycle operations re-derive it inside their own
transaction, and the reconcile job repairs any divergence.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from cargo_subscriptions.core.clock import ensure_utc, normalize_now
from cargo_subscriptions.core.database import get_db_session, subscriptions, users
from cargo_subscriptions.features.audit.service import record_audit
from cargo_subscriptions.features.subscriptions.store import find_current, find_pending_for_user
from cargo_subscriptions.models.subscription import UserSubscriptionPointer

logger = logging.getLogger(__name__)

POINTER_FIELDS = (
    "subscription_plan",
    "subscription_status",
    "subscription_expires_at",
    "current_subscription_id",
    "pending_subscription_id",
)


def ensure_user(session: Session, user_id: str, *, user_type: str = "cargo_owner", now: Optional[datetime] = None) -> None:
    """Create the user row if it does not exist yet."""
    exists = session.execute(select(users.c.user_id).where(users.c.user_id == user_id)).first()
    if exists:
        return
    ts = normalize_now(now)
    session.execute(
        insert(users).values(user_id=user_id, user_type=user_type, created_at=ts, updated_at=ts)
    )


def derive_pointer(session: Session, user_id: str, now: Optional[datetime] = None) -> UserSubscriptionPointer:
    """Compute what the user record should say, from the Subscription Store alone."""
    current = find_current(session, user_id, normalize_now(now))
    pending = find_pending_for_user(session, user_id)
    return UserSubscriptionPointer(
        user_id=user_id,
        subscription_plan=current.plan_id if current else None,
        subscription_status=current.status.value if current else None,
        subscription_expires_at=current.expires_at if current else None,
        current_subscription_id=current.id if current else None,
        pending_subscription_id=pending.id if pending else None,
    )


def _stored_pointer(session: Session, user_id: str) -> Optional[UserSubscriptionPointer]:
    row = session.execute(select(users).where(users.c.user_id == user_id)).first()
    if not row:
        return None
    return UserSubscriptionPointer(
        user_id=row.user_id,
        subscription_plan=row.subscription_plan,
        subscription_status=row.subscription_status,
        subscription_expires_at=ensure_utc(row.subscription_expires_at),
        current_subscription_id=row.current_subscription_id,
        pending_subscription_id=row.pending_subscription_id,
    )


def _write_pointer(session: Session, pointer: UserSubscriptionPointer, now: datetime) -> None:
    ensure_user(session, pointer.user_id, now=now)
    session.execute(
        update(users)
        .where(users.c.user_id == pointer.user_id)
        .values(**pointer.model_dump(include=set(POINTER_FIELDS)), updated_at=now)
    )


def sync_user_pointer(session: Session, user_id: str, now: Optional[datetime] = None) -> UserSubscriptionPointer:
    """Re-derive and store the user's pointer inside the caller's transaction."""
    ts = normalize_now(now)
    pointer = derive_pointer(session, user_id, ts)
    _write_pointer(session, pointer, ts)
    return pointer


def get_user_pointer(user_id: str) -> Optional[UserSubscriptionPointer]:
    with get_db_session() as session:
        return _stored_pointer(session, user_id)


def _diff(stored: Optional[UserSubscriptionPointer], derived: UserSubscriptionPointer) -> Dict[str, Any]:
    if stored is None:
        return {f: {"stored": None, "derived": getattr(derived, f)} for f in POINTER_FIELDS if getattr(derived, f) is not None}
    return {
        f: {"stored": getattr(stored, f), "derived": getattr(derived, f)}
        for f in POINTER_FIELDS
        if getattr(stored, f) != getattr(derived, f)
    }


def reconcile_user_pointers(now: Optional[datetime] = None, fix: bool = False, limit: int = 100) -> Dict[str, Any]:
    """
    Compare every user's stored pointer with the one derived from the store.

    With fix=True, up to `limit` divergent pointers are rewritten and each
    repair is audited with actor "system_job".
    """
    ts = normalize_now(now)
    issues: List[Dict[str, Any]] = []
    corrected: List[Dict[str, Any]] = []

    with get_db_session() as session:
        user_ids = {r[0] for r in session.execute(select(subscriptions.c.user_id).distinct())}
        user_ids |= {r[0] for r in session.execute(select(users.c.user_id))}

        for user_id in sorted(user_ids):
            derived = derive_pointer(session, user_id, ts)
            diff = _diff(_stored_pointer(session, user_id), derived)
            if not diff:
                continue
            issues.append({"user_id": user_id, "fields": sorted(diff)})
            if fix and len(corrected) < limit:
                _write_pointer(session, derived, ts)
                corrected.append({"user_id": user_id, "diff": diff})

    # Audits go out after the repairs are committed
    for item in corrected:
        record_audit(
            action="user_pointer_repaired",
            actor_id="system_job",
            target_type="user",
            target_id=item["user_id"],
            user_id=item["user_id"],
            details={k: {"stored": str(v["stored"]), "derived": str(v["derived"])} for k, v in item["diff"].items()},
            now=ts,
        )

    if issues:
        logger.warning(
            "[reconcile] user pointer divergence",
            extra={"issues_found": len(issues), "corrections_applied": len(corrected), "fix": fix},
        )
    return {
        "issues_found": len(issues),
        "corrections_applied": len(corrected),
        "issues": issues[:limit],
        "timestamp": ts.isoformat(),
    }
