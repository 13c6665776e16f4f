"""
Messaging data models: wire-level event envelope, dead letters.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..dispatch.models import NotificationRequest


class EventEnvelope(BaseModel):
    """Inbound broker event. Field names follow the camelCase wire format."""

    event_id: Optional[str] = Field(None, alias="eventId")
    event_type: str = Field(..., alias="eventType")
    aggregate_id: Optional[str] = Field(None, alias="aggregateId")
    aggregate_type: Optional[str] = Field(None, alias="aggregateType")
    timestamp: Optional[str] = None
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    payload: Dict[str, Any]
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        frozen = True
        populate_by_name = True

    @property
    def service(self) -> str:
        return self.event_type.split(".", 1)[0]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class NormalizedEvent(BaseModel):
    """What a registered handler receives: the envelope plus its canonical request."""

    envelope: EventEnvelope
    request: NotificationRequest
    correlation_id: str

    class Config:
        frozen = True

    @property
    def event_type(self) -> str:
        return self.envelope.event_type


class DeadLetterReason(str, Enum):
    VALIDATION_FAILED = "validation failed"
    NORMALIZATION_FAILED = "normalization failed"
    RETRIES_EXHAUSTED = "retries exhausted"
    UNEXPECTED_ERROR = "unexpected error"


class DeadLetterRecord(BaseModel):
    """Append-only record of a message routed to the dead-letter queue."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    message: Any
    reason: DeadLetterReason
    correlation_id: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    source: str = "consumer"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    class Config:
        frozen = True
        use_enum_values = True

    def to_wire(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "dlqReason": self.reason,
            "dlqTimestamp": self.timestamp.isoformat(),
            "correlationId": self.correlation_id,
            "errors": list(self.errors),
            "source": self.source,
        }
