"""
Webhook subscription and delivery models.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    NOTIFICATION_CREATED = "notification.created"
    NOTIFICATION_SENT = "notification.sent"
    NOTIFICATION_DELIVERED = "notification.delivered"
    NOTIFICATION_FAILED = "notification.failed"
    NOTIFICATION_READ = "notification.read"
    NOTIFICATION_STATUS_UPDATE = "notification.status-update"
    NOTIFICATION_BOUNCED = "notification.bounced"
    NOTIFICATION_CLICKED = "notification.clicked"
    NOTIFICATION_DISMISSED = "notification.dismissed"
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class Webhook(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    url: str
    events: List[WebhookEventType]
    headers: Optional[Dict[str, str]] = None
    secret: Optional[str] = None
    is_active: bool = True
    timeout: int = 30000  # ms
    retry_count: int = 3
    retry_delay: int = 1000  # ms
    created_by: str
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def public(self) -> Dict[str, Any]:
        """API view: the secret is never echoed back."""
        data = self.model_dump(mode="json", exclude={"secret"})
        data["has_secret"] = bool(self.secret)
        return data


class CreateWebhook(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    url: str
    events: List[str]
    headers: Optional[Dict[str, str]] = None
    secret: Optional[str] = None
    is_active: bool = True
    timeout: int = Field(30000, ge=1000, le=300000)
    retry_count: int = Field(3, ge=0, le=10)
    retry_delay: int = Field(1000, ge=0, le=60000)


class UpdateWebhook(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    url: Optional[str] = None
    events: Optional[List[str]] = None
    headers: Optional[Dict[str, str]] = None
    secret: Optional[str] = None
    is_active: Optional[bool] = None
    timeout: Optional[int] = Field(None, ge=1000, le=300000)
    retry_count: Optional[int] = Field(None, ge=0, le=10)
    retry_delay: Optional[int] = Field(None, ge=0, le=60000)


class WebhookFilter(BaseModel):
    name: Optional[str] = None
    event: Optional[str] = None
    is_active: Optional[bool] = None
    created_by: Optional[str] = None
    search: Optional[str] = None


class WebhookEvent(BaseModel):
    """Body delivered to subscribers."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    timestamp: datetime = Field(default_factory=_now)
    data: Dict[str, Any] = Field(default_factory=dict)


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class DeliveryAttempt(BaseModel):
    """One try at delivering one event to one webhook."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    webhook_id: str
    event_id: str
    event_type: str
    status: DeliveryStatus
    attempt: int
    sent_at: Optional[datetime] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    class Config:
        frozen = True
