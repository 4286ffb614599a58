"""
cargo_subscriptions/models/subscription.py

Subscription records, their usage sub-document and adjustment history.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from cargo_subscriptions.models.plan import PlanFeatures

BASIC_PLAN_ID = "basic"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REPLACED = "replaced"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class PaymentDetails(BaseModel):
    """Known payment fields plus an open-ended map for method-specific extras."""
    model_config = ConfigDict(frozen=True)

    transaction_id: Optional[str] = None
    phone_number: Optional[str] = None
    account_number: Optional[str] = None
    reference: Optional[str] = None
    amount_paid: Optional[float] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "PaymentDetails":
        """Split a free-form payload into typed fields and `extra`."""
        if not raw:
            return cls()
        known = {k: raw[k] for k in cls.model_fields if k != "extra" and k in raw}
        extra = dict(raw.get("extra") or {})
        extra.update({k: v for k, v in raw.items() if k not in cls.model_fields})
        return cls(**known, extra=extra)


class UsageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    loads_this_month: int = 0
    last_usage_reset: Optional[datetime] = None


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    plan_name: str
    price: float
    currency: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    duration_days: int
    features: PlanFeatures
    status: SubscriptionStatus
    payment_method: Optional[PaymentMethod] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    payment_verified: Optional[bool] = None
    requested_at: datetime
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    approved_by: Optional[str] = None
    approved_by_name: Optional[str] = None
    approved_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejection_category: Optional[str] = None
    refund_required: Optional[bool] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancellation_category: Optional[str] = None
    refund_amount: Optional[float] = None
    replaced_by: Optional[str] = None
    deactivated_at: Optional[datetime] = None

    usage: UsageSnapshot = Field(default_factory=UsageSnapshot)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_basic(self) -> bool:
        return self.plan_id == BASIC_PLAN_ID


class HistoryEntry(BaseModel):
    """Immutable record of an administrative duration change."""
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    action: str
    days: Optional[int] = None
    previous_expires_at: Optional[datetime] = None
    new_expires_at: Optional[datetime] = None
    previous_status: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    compensation_type: Optional[str] = None
    performed_by: str
    performed_at: datetime


class UserSubscriptionPointer(BaseModel):
    """Denormalized view of a user's subscription kept on the user record."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    subscription_plan: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_expires_at: Optional[datetime] = None
    current_subscription_id: Optional[str] = None
    pending_subscription_id: Optional[str] = None
