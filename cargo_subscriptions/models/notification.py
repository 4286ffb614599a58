from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: Optional[str] = None
    user_type: str
    type: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: str = "medium"
    is_read: bool = False
    subscription_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    created_at: datetime


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    actor_id: str
    target_type: str = "subscription"
    target_id: Optional[str] = None
    user_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
    created_at: datetime
