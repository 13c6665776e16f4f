from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..webhooks.models import UpdateWebhook


class BulkUpdateRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    update: UpdateWebhook


class BulkDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class ProviderOutcomeStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    READ = "read"
    BOUNCED = "bounced"
    CLICKED = "clicked"
    DISMISSED = "dismissed"


class ProviderOutcome(BaseModel):
    """Asynchronous delivery report posted by the delivery provider."""

    delivery_id: str
    status: ProviderOutcomeStatus
    correlation_id: Optional[str] = None
    error: Optional[str] = None
    occurred_at: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)
