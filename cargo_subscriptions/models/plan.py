"""
cargo_subscriptions/models/plan.py

Plan catalog models.

A plan defines price, billing cycle length and the feature entitlements a
subscription snapshots at approval time.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

UNLIMITED = -1


class PlanFeatures(BaseModel):
    """Feature set granted by a plan. max_loads == -1 means unlimited."""
    model_config = ConfigDict(frozen=True)

    max_loads: int
    priority_support: bool = False
    advanced_analytics: bool = False
    bulk_operations: bool = False
    api_access: bool = False
    dedicated_manager: bool = False

    @property
    def unlimited_loads(self) -> bool:
        return self.max_loads == UNLIMITED


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    description: Optional[str] = None
    price: float = 0
    currency: str = "KES"
    duration_days: int = 30
    features: PlanFeatures
    is_active: bool = True
    is_visible: bool = True
    display_order: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_free(self) -> bool:
        return self.price <= 0
