"""
Maps validated event envelopes into canonical NotificationRequests.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ..config.redirects import RedirectPatterns
from ..dispatch.models import NotificationRequest
from ..errors import NormalizationError
from .models import EventEnvelope

logger = logging.getLogger(__name__)

_REQUIRED_NOTIFICATION_FIELDS = ("title", "body", "type", "priority", "channels")
_REQUIRED_PAYLOAD_FIELDS = ("sourceService", "contentId")


def new_correlation_id() -> str:
    return f"corr-{int(time.time() * 1000)}-{uuid4().hex[:9]}"


def _missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        return True
    return False


class EventNormalizer:
    def __init__(self, redirects: Optional[RedirectPatterns] = None):
        self.redirects = redirects or RedirectPatterns()

    def normalize(
        self, event: EventEnvelope, correlation_id: Optional[str] = None
    ) -> NotificationRequest:
        payload: Dict[str, Any] = event.payload or {}
        notification = payload.get("notification")
        if not isinstance(notification, dict):
            raise NormalizationError("payload.notification must be an object")

        for name in _REQUIRED_NOTIFICATION_FIELDS:
            if _missing(notification.get(name)):
                raise NormalizationError(f"payload.notification.{name} is required")
        for name in _REQUIRED_PAYLOAD_FIELDS:
            if _missing(payload.get(name)):
                raise NormalizationError(f"payload.{name} is required")

        sent_by = payload.get("sentBy")
        if _missing(sent_by):
            raise NormalizationError(
                f"payload.sentBy is required for {event.event_type} events"
            )

        source_service = str(payload["sourceService"])
        content_id = str(payload["contentId"])
        content_type = payload.get("contentType") or notification["type"]
        redirect_url = self.redirects.resolve(
            source_service,
            content_id,
            explicit_url=payload.get("redirectUrl"),
            content_type=content_type,
        )

        try:
            request = NotificationRequest(
                title=notification["title"],
                body=notification["body"],
                type=notification["type"],
                priority=notification["priority"],
                channels=notification["channels"],
                target=notification.get("target"),
                source_service=source_service,
                content_id=content_id,
                redirect_url=redirect_url,
                content_type=content_type,
                sent_by=sent_by,
                correlation_id=correlation_id
                or event.correlation_id
                or new_correlation_id(),
                scheduled_at=notification.get("scheduledAt"),
                expires_at=notification.get("expiresAt"),
                action_buttons=notification.get("actionButtons"),
                data=notification.get("data") or {},
            )
        except PydanticValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise NormalizationError(f"cannot build notification request: {details}") from e

        logger.debug(
            "Normalized %s from %s -> %s",
            event.event_type,
            source_service,
            redirect_url,
            extra={"trace_id": request.correlation_id},
        )
        return request
