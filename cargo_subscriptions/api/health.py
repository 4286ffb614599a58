"""
Health and diagnostics API.

Liveness, readiness (store reachable, schema present) and the background
scheduler's per-job status. No secrets are exposed.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from cargo_subscriptions.core.database import get_engine
from cargo_subscriptions.core.logging import get_correlation_id

logger = logging.getLogger("cargo_subscriptions")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "plans",
    "subscriptions",
    "subscription_history",
    "app_users",
    "notifications",
    "audit_logs",
    "job_runs",
]


class SchedulerHealth(BaseModel):
    """Scheduler status snapshot."""
    ok: bool
    enabled: bool
    jobs: Dict[str, Dict[str, Any]] = {}
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


def _missing_tables() -> List[str]:
    """Probe the store; raises when it cannot be reached."""
    engine = get_engine()
    with engine.connect() as conn:
        conn.exec_driver_sql("SELECT 1")
    inspector = inspect(engine)
    return [t for t in REQUIRED_TABLES if not inspector.has_table(t)]


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@root_router.get("/readyz")
def readyz():
    """Ready when the Subscription Store answers and its schema is in place."""
    try:
        missing = _missing_tables()
    except Exception as e:
        logger.error("[readyz] subscription store unreachable", extra={"error": str(e)})
        return _not_ready("database unreachable")

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return _not_ready(detail)
    return {"status": "ok"}


@router.get("/scheduler", response_model=SchedulerHealth)
def health_scheduler(request: Request, now: Optional[str] = Query(None)):
    """
    Background job status.

    `ok` is true when the scheduler is disabled by configuration, or when
    every registered job is ticking.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    enabled = bool(getattr(request.app.state, "scheduler_enabled", scheduler is not None))
    jobs = scheduler.status() if scheduler is not None else {}
    ok = (not enabled) or (bool(jobs) and all(j["running"] for j in jobs.values()))

    logger.info(
        "health.scheduler",
        extra={"request_id": get_correlation_id(), "ok": ok, "jobs": len(jobs)},
    )
    return SchedulerHealth(
        ok=ok,
        enabled=enabled,
        jobs=jobs,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
