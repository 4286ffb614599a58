# cargo_subscriptions/conftest.py
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# In-memory store for the whole suite; background jobs stay off unless a test starts them
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Fresh schema and plan catalog for every test.

    The catalog is seeded with a fixed timestamp so tests stay deterministic.
    """
    from cargo_subscriptions.core.database import reset_database
    from cargo_subscriptions.features.plans.service import seed_plans

    reset_database()
    seed_plans(now=datetime(2025, 1, 1, tzinfo=timezone.utc))
    yield


@pytest.fixture
def now():
    """Mid-month, mid-day (12:00 in Nairobi) so no calendar boundary is near."""
    return datetime(2025, 3, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def user_id():
    return f"user-{uuid4().hex[:8]}"


@pytest.fixture
def make_pending(now):
    """Factory: a pending paid subscription for `user_id`."""
    from cargo_subscriptions.features.subscriptions.service import request_subscription

    def _make(user_id: str, plan_id: str = "pro", *, billing_cycle: str = "monthly", at=None):
        result = request_subscription(
            user_id,
            plan_id,
            "mpesa",
            {"transaction_id": f"TX{uuid4().hex[:8].upper()}", "phone_number": "+254700000000"},
            billing_cycle,
            now=at or now,
        )
        return result["subscription"]

    return _make


@pytest.fixture
def make_active(make_pending, now):
    """Factory: a pending subscription approved by an admin."""
    from cargo_subscriptions.features.subscriptions.admin_service import approve_subscription

    def _make(user_id: str, plan_id: str = "pro", *, at=None, custom_duration=None):
        pending = make_pending(user_id, plan_id, at=at)
        return approve_subscription(
            pending.id, "admin-1", admin_name="Ops Admin", custom_duration=custom_duration, now=at or now
        )

    return _make
