"""
Subscription Store: engine, sessions and table definitions.

`get_db_session()` is the unit of work (commit on success, rollback on any
exception). `primary_transaction()` wraps it for lifecycle mutations and
turns connectivity failures into DependencyUnavailableError. Sessions are
never nested: helpers that may run inside a caller's transaction take the
caller's session through `session_scope`.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float, Index, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func

from cargo_subscriptions.core.config import settings
from cargo_subscriptions.core.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)

metadata = MetaData()

# Server-database pool sizing
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL (set by the test suite) wins over DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # One shared connection, so an in-memory database survives across sessions and threads
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)create the engine and session factory for `database_url`."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in the environment or .env file.")

    _engine = create_engine(url, echo=False, **_engine_options(url))
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    logger.debug("[db] engine initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        return init_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        init_engine()
    return _session_factory


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    One unit of work.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def primary_transaction() -> Iterator[Session]:
    """
    All-or-nothing boundary for a state transition and its projections.

    Store connectivity failures surface as DependencyUnavailableError so callers
    can retry; every other exception propagates unchanged. Either way nothing
    inside the block is committed.
    """
    try:
        with get_db_session() as session:
            yield session
    except (OperationalError, InterfaceError) as exc:
        logger.error("[db] primary store unavailable", extra={"error": str(exc.orig or exc)})
        raise DependencyUnavailableError("Subscription store is unavailable, retry later") from exc


@contextmanager
def session_scope(session: Optional[Session] = None) -> Iterator[Session]:
    """Reuse the caller's session, or open a fresh unit of work."""
    if session is not None:
        yield session
        return
    with get_db_session() as fresh:
        yield fresh


def create_all_tables() -> None:
    """Create missing tables; existing ones are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive: tests and local development only."""
    metadata.drop_all(bind=get_engine())


def reset_database() -> None:
    drop_all_tables()
    create_all_tables()


# Plan catalog
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price', Float, nullable=False, default=0),
    Column('currency', String(10), nullable=False, default='KES'),
    Column('duration_days', Integer, nullable=False, default=30),
    Column('features', JSON, nullable=False),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('is_visible', Boolean, nullable=False, default=True),
    Column('display_order', Integer, nullable=False, default=0),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_plans_active_order', 'is_active', 'display_order'),
)

# Denormalized subscription pointer per user (a cache, re-derivable from subscriptions)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('email', String(255), nullable=True),
    Column('user_type', String(30), nullable=False, default='cargo_owner'),
    Column('subscription_plan', String(50), nullable=True),
    Column('subscription_status', String(20), nullable=True),
    Column('subscription_expires_at', DateTime(timezone=True), nullable=True),
    Column('current_subscription_id', String(36), nullable=True),
    Column('pending_subscription_id', String(36), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_subscription_plan', 'subscription_plan'),
)

# One row per subscription request / billing period
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(50), nullable=False),
    Column('plan_name', String(200), nullable=False),
    Column('price', Float, nullable=False, default=0),
    Column('currency', String(10), nullable=False),
    Column('billing_cycle', String(20), nullable=False, default='monthly'),
    Column('duration_days', Integer, nullable=False),
    Column('features', JSON, nullable=False),  # snapshot taken from the plan
    Column('status', String(20), nullable=False),
    Column('payment_method', String(30), nullable=True),
    Column('payment_status', String(20), nullable=False, default='pending'),
    Column('payment_details', JSON, nullable=True),
    Column('payment_verified', Boolean, nullable=True),
    Column('requested_at', DateTime(timezone=True), nullable=False),
    Column('activated_at', DateTime(timezone=True), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),  # NULL = never expires (basic)
    Column('approved_by', String(100), nullable=True),
    Column('approved_by_name', String(200), nullable=True),
    Column('approved_at', DateTime(timezone=True), nullable=True),
    Column('admin_notes', Text, nullable=True),
    Column('rejected_by', String(100), nullable=True),
    Column('rejected_at', DateTime(timezone=True), nullable=True),
    Column('rejection_reason', Text, nullable=True),
    Column('rejection_category', String(30), nullable=True),
    Column('refund_required', Boolean, nullable=True),
    Column('cancelled_by', String(100), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('cancellation_reason', Text, nullable=True),
    Column('cancellation_category', String(30), nullable=True),
    Column('refund_amount', Float, nullable=True),
    Column('replaced_by', String(36), nullable=True),
    Column('deactivated_at', DateTime(timezone=True), nullable=True),
    Column('loads_this_month', Integer, nullable=False, default=0),
    Column('last_usage_reset', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, default=1),  # optimistic concurrency counter
    Column('fallback_key', String(100), nullable=True),  # user_id on the active basic row only
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('fallback_key', name='uq_subscriptions_fallback_key'),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_subscriptions_status_expires', 'status', 'expires_at'),
    Index('idx_subscriptions_requested_at', 'requested_at'),
)

# Append-only duration adjustments
subscription_history = Table(
    'subscription_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', String(36), nullable=False),
    Column('action', String(50), nullable=False),  # extend, adjust_duration, update
    Column('days', Integer, nullable=True),
    Column('previous_expires_at', DateTime(timezone=True), nullable=True),
    Column('new_expires_at', DateTime(timezone=True), nullable=True),
    Column('previous_status', String(20), nullable=True),
    Column('reason', Text, nullable=True),
    Column('notes', Text, nullable=True),
    Column('compensation_type', String(30), nullable=True),
    Column('performed_by', String(100), nullable=False),
    Column('performed_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscription_history_sub_performed', 'subscription_id', 'performed_at'),
)

# Load-creation events, written by the load path; read here for usage
loads = Table(
    'loads',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('posted_by', String(100), nullable=False),
    Column('title', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_loads_posted_by_created', 'posted_by', 'created_at'),
)

notifications = Table(
    'notifications',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=True),  # NULL for admin-facing broadcasts
    Column('user_type', String(30), nullable=False),
    Column('type', String(50), nullable=False),
    Column('title', String(200), nullable=False),
    Column('message', Text, nullable=False),
    Column('data', JSON, nullable=True),
    Column('priority', String(10), nullable=False, default='medium'),
    Column('is_read', Boolean, nullable=False, default=False),
    Column('read_at', DateTime(timezone=True), nullable=True),
    Column('subscription_id', String(36), nullable=True),
    Column('dedupe_key', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_notifications_user_created', 'user_id', 'created_at'),
    Index('idx_notifications_dedupe_created', 'dedupe_key', 'created_at'),
    Index('idx_notifications_read_created', 'is_read', 'created_at'),
)

audit_logs = Table(
    'audit_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action', String(100), nullable=False),
    Column('actor_id', String(100), nullable=False),  # admin id, "system" or the user
    Column('target_type', String(50), nullable=False, default='subscription'),
    Column('target_id', String(100), nullable=True),
    Column('user_id', String(100), nullable=True),
    Column('details', JSON, nullable=True),
    Column('request_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_audit_logs_action_created', 'action', 'created_at'),
    Index('idx_audit_logs_target', 'target_id'),
)

# Scheduled job executions
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('run_id', String(100), nullable=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),  # success, failed
    Column('stats_json', JSON, nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_job_runs_name_started', 'job_name', 'started_at'),
)
