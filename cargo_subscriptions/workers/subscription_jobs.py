"""Subscription maintenance jobs.

Usage:
    python -m cargo_subscriptions.workers.subscription_jobs --list
    python -m cargo_subscriptions.workers.subscription_jobs --once expire_subscriptions
    python -m cargo_subscriptions.workers.subscription_jobs --loop

Jobs (cadences evaluated in BUSINESS_TIMEZONE):
- expire_subscriptions      hourly at :00
- expiry_reminders          daily at 09:00
- notification_cleanup      Mondays at 10:00
- monthly_report            1st of the month at 08:00
- reconcile_user_pointers   daily at 03:30
"""
from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select

from cargo_subscriptions.core.clock import day_bounds, normalize_now
from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.database import get_db_session, job_runs, primary_transaction, subscriptions
from cargo_subscriptions.core.errors import (
    AlreadyProcessedError,
    DependencyUnavailableError,
    InvalidStateTransitionError,
)
from cargo_subscriptions.core.logging import configure_logging
from cargo_subscriptions.features.notifications.service import (
    CARGO_OWNER_USER_TYPE,
    cleanup_read_notifications,
    emit_notification,
    has_recent_notification,
)
from cargo_subscriptions.features.reports.service import send_monthly_report
from cargo_subscriptions.features.subscriptions import lifecycle, store
from cargo_subscriptions.features.subscriptions.effects import PostCommitEffects
from cargo_subscriptions.features.subscriptions.service import ensure_basic_subscription
from cargo_subscriptions.features.users.service import reconcile_user_pointers, sync_user_pointer
from cargo_subscriptions.models.subscription import BASIC_PLAN_ID, SubscriptionStatus
from cargo_subscriptions.workers.scheduler import Cadence, Scheduler

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _expire_one(subscription_id: str, now: datetime) -> bool:
    """Expire one subscription in its own transaction. False when it was no longer eligible."""
    effects = PostCommitEffects("expire")
    with primary_transaction() as session:
        sub = store.require_subscription(session, subscription_id)
        if sub.expires_at is None or sub.expires_at > now:
            return False
        expired = store.apply_transition(session, sub, "expire", {}, now=now)
        ensure_basic_subscription(session, expired.user_id, now)
        sync_user_pointer(session, expired.user_id, now)

        effects.notify_user(expired.user_id, lifecycle.expired_notification(expired), subscription_id=expired.id, now=now)
        effects.audit(
            action="subscription_expired",
            actor_id=SYSTEM_ACTOR,
            target_id=expired.id,
            user_id=expired.user_id,
            details={"plan_id": expired.plan_id, "expires_at": expired.expires_at.isoformat()},
            now=now,
        )
    effects.run()
    return True


def expire_subscriptions(
    now: Optional[datetime] = None,
    *,
    batch_size: Optional[int] = None,
    max_batches: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Expire every active subscription whose expiry has passed.

    Work is paged (batch_size rows, at most max_batches pages per run); the
    next tick picks up whatever remains. A subscription changed concurrently
    by an admin is skipped. Store outages abort the run.
    """
    now = normalize_now(now)
    size = batch_size or settings.SWEEP_BATCH_SIZE
    pages = max_batches or settings.SWEEP_MAX_BATCHES
    stats = {"expired": 0, "skipped": 0, "failed": 0, "batches": 0}
    failed_ids: List[str] = []

    for _ in range(pages):
        with get_db_session() as session:
            query = (
                select(subscriptions.c.id)
                .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
                .where(subscriptions.c.plan_id != BASIC_PLAN_ID)
                .where(subscriptions.c.expires_at.isnot(None))
                .where(subscriptions.c.expires_at <= now)
            )
            if failed_ids:
                query = query.where(subscriptions.c.id.notin_(failed_ids))
            ids = [r[0] for r in session.execute(query.order_by(subscriptions.c.expires_at).limit(size))]
        if not ids:
            break
        stats["batches"] += 1

        for subscription_id in ids:
            try:
                if _expire_one(subscription_id, now):
                    stats["expired"] += 1
                else:
                    stats["skipped"] += 1
            except (AlreadyProcessedError, InvalidStateTransitionError):
                stats["skipped"] += 1
                failed_ids.append(subscription_id)
                logger.info("[expire] subscription changed concurrently, skipped", extra={"subscription_id": subscription_id})
            except DependencyUnavailableError:
                raise
            except Exception:
                stats["failed"] += 1
                failed_ids.append(subscription_id)
                logger.error("[expire] failed to expire subscription", exc_info=True, extra={"subscription_id": subscription_id})

    logger.info("[expire] sweep finished", extra=stats)
    return stats


def send_expiry_reminders(now: Optional[datetime] = None, *, days: Optional[List[int]] = None) -> Dict[str, Any]:
    """
    Remind users whose subscription expires exactly N local calendar days from now.

    A reminder for (subscription, N) is sent at most once per dedupe window
    (REMINDER_DEDUPE_HOURS), however often the sweep runs.
    """
    now = normalize_now(now)
    thresholds = days or settings.reminder_days()
    since = now - timedelta(hours=settings.REMINDER_DEDUPE_HOURS)
    sent: Dict[int, int] = {}
    skipped = 0
    failed = 0

    for threshold in thresholds:
        start, end = day_bounds(now, threshold)
        sent[threshold] = 0
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
                .where(subscriptions.c.expires_at >= start)
                .where(subscriptions.c.expires_at < end)
                .order_by(subscriptions.c.expires_at)
            ).fetchall()
            candidates = [store.row_to_subscription(r) for r in rows]

        for sub in candidates:
            dedupe_key = f"reminder:{sub.id}:{threshold}"
            try:
                with get_db_session() as session:
                    if has_recent_notification(session, dedupe_key, since):
                        skipped += 1
                        continue
                    draft = lifecycle.reminder_notification(sub, threshold)
                    emit_notification(
                        user_id=sub.user_id,
                        user_type=CARGO_OWNER_USER_TYPE,
                        type=draft.type,
                        title=draft.title,
                        message=draft.message,
                        data=draft.data,
                        priority=draft.priority,
                        subscription_id=sub.id,
                        dedupe_key=dedupe_key,
                        now=now,
                        session=session,
                    )
                sent[threshold] += 1
            except Exception:
                failed += 1
                logger.warning(
                    "[reminders] failed to send reminder",
                    exc_info=True,
                    extra={"subscription_id": sub.id, "days": threshold},
                )

    stats = {"sent": {str(k): v for k, v in sent.items()}, "skipped": skipped, "failed": failed}
    logger.info("[reminders] sweep finished", extra={"sent": json.dumps(stats["sent"]), "skipped": skipped, "failed": failed})
    return stats


def cleanup_notifications(now: Optional[datetime] = None) -> Dict[str, Any]:
    return cleanup_read_notifications(now=now)


def generate_monthly_report(now: Optional[datetime] = None) -> Dict[str, Any]:
    report = send_monthly_report(now)
    return {"period": report["period"]["label"], **report["summary"]}


def repair_user_pointers(now: Optional[datetime] = None) -> Dict[str, Any]:
    result = reconcile_user_pointers(now=now, fix=True)
    result.pop("issues", None)
    return result


def manual_expiry_check(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Run the expire and reminder sweeps immediately (admin trigger)."""
    now = normalize_now(now)
    return {
        "expired": expire_subscriptions(now),
        "reminders": send_expiry_reminders(now),
    }


def record_job_run(
    *,
    job_name: str,
    run_id: Optional[str],
    started_at: datetime,
    finished_at: datetime,
    status: str,
    stats: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(job_runs).values(
                job_name=job_name,
                run_id=run_id,
                started_at=started_at,
                finished_at=finished_at,
                status=status,
                stats_json=json.loads(json.dumps(stats, default=str)) if stats is not None else None,
                error=error,
            )
        )


JOBS = {
    "expire_subscriptions": (expire_subscriptions, Cadence.hourly(minute=0), "Expire lapsed subscriptions"),
    "expiry_reminders": (send_expiry_reminders, Cadence.daily(hour=9), "Send 3/7/14-day expiry reminders"),
    "notification_cleanup": (cleanup_notifications, Cadence.weekly(weekday=0, hour=10), "Delete old read notifications"),
    "monthly_report": (generate_monthly_report, Cadence.monthly(day=1, hour=8), "Monthly subscription report"),
    "reconcile_user_pointers": (repair_user_pointers, Cadence.daily(hour=3, minute=30), "Repair user subscription pointers"),
}


def build_scheduler(*, record_runs: bool = True, **kwargs) -> Scheduler:
    """A Scheduler with every subscription job registered (not started)."""
    scheduler = Scheduler(recorder=record_job_run if record_runs else None, **kwargs)
    for name, (fn, cadence, description) in JOBS.items():
        scheduler.register(name, fn, cadence, description)
    return scheduler


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Subscription maintenance worker")
    parser.add_argument("--once", choices=sorted(JOBS), help="Run one job immediately and exit")
    parser.add_argument("--loop", action="store_true", help="Run every job on its schedule until interrupted")
    parser.add_argument("--list", action="store_true", help="List jobs and their cadences")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)

    if args.list:
        for name, (_, cadence, description) in JOBS.items():
            print(f"{name:26} {cadence.describe():32} {description}")
        return

    scheduler = build_scheduler()

    if args.once:
        outcome = scheduler.run_job(args.once)
        print(f"[subscription-jobs] {outcome.name}: {outcome.status} {outcome.result if outcome.result is not None else outcome.error}")
        if outcome.status != "success":
            raise SystemExit(1)
        return

    if not args.loop:
        parser.print_help()
        return

    print("[subscription-jobs] Starting scheduler. CTRL+C to stop.")
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("[subscription-jobs] Stopping...")
    finally:
        scheduler.stop_all()


if __name__ == "__main__":
    main()
