"""
Canonical notification request and priority queue data models.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class NotificationPriority(str, Enum):
    """Priority tiers, highest first."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    NotificationPriority.URGENT: 0,
    NotificationPriority.HIGH: 1,
    NotificationPriority.NORMAL: 2,
    NotificationPriority.LOW: 3,
}


class NotificationChannel(str, Enum):
    PUSH = "push"
    IN_APP = "in-app"


class NotificationType(str, Enum):
    ANNOUNCEMENT = "announcement"
    PAYMENT = "payment"
    BOOKING = "booking"
    EMERGENCY = "emergency"
    FEEDBACK = "feedback"
    SYSTEM = "system"


class NotificationTarget(BaseModel):
    """Explicit audience. An absent target means broadcast."""

    users: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    segments: List[str] = Field(default_factory=list)

    class Config:
        frozen = True


class ActionButton(BaseModel):
    label: str
    action: str
    style: Optional[str] = None

    class Config:
        frozen = True


class NotificationRequest(BaseModel):
    """Canonical, normalized notification. Never mutated; use model_copy(update=...)."""

    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=1000)
    type: NotificationType
    priority: NotificationPriority
    channels: List[NotificationChannel] = Field(..., min_length=1)
    target: Optional[NotificationTarget] = None
    source_service: str
    content_id: str
    redirect_url: Optional[str] = None
    content_type: str
    sent_by: Optional[str] = None
    correlation_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    action_buttons: Optional[List[ActionButton]] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    DEAD = "dead"


class QueueItem(BaseModel):
    """A request owned by the priority queue until it reaches done or dead."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    request: NotificationRequest
    priority_tier: NotificationPriority
    enqueued_at: datetime
    sequence: int = 0
    attempt_count: int = 0
    status: QueueItemStatus = QueueItemStatus.PENDING
    revision: int = 1
    last_error: Optional[str] = None
    delivery_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def correlation_id(self) -> Optional[str]:
        return self.request.correlation_id

    def sort_key(self):
        return (self.priority_tier.rank, self.enqueued_at, self.sequence)

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="json")
        # Flattened for store-level filtering
        doc["correlation_id"] = self.correlation_id
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "QueueItem":
        data = dict(doc)
        data.pop("correlation_id", None)
        return cls.model_validate(data)
