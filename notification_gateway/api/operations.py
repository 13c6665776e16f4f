from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query

from ..audit.service import AuditService
from ..dispatch.service import PriorityDispatchQueue
from ..messaging.dead_letters import DeadLetterSink
from ..webhooks.dispatcher import WebhookDispatcher
from .models import ProviderOutcome

logger = logging.getLogger(__name__)

operations_router = APIRouter(tags=["operations"])

_queue: Optional[PriorityDispatchQueue] = None
_dead_letters: Optional[DeadLetterSink] = None
_dispatcher: Optional[WebhookDispatcher] = None
_audit: Optional[AuditService] = None


def configure_operations_api(
    *,
    queue: PriorityDispatchQueue,
    dead_letters: DeadLetterSink,
    dispatcher: WebhookDispatcher,
    audit_service: AuditService,
) -> None:
    global _queue, _dead_letters, _dispatcher, _audit
    _queue = queue
    _dead_letters = dead_letters
    _dispatcher = dispatcher
    _audit = audit_service


def _require(svc: Any, name: str) -> Any:
    if svc is None:
        raise HTTPException(status_code=503, detail=f"{name} unavailable")
    return svc


@operations_router.get("/queue/status")
async def queue_status() -> Dict[str, Any]:
    queue: PriorityDispatchQueue = _require(_queue, "Dispatch queue")
    return await queue.status()


@operations_router.get("/dead-letters")
async def list_dead_letters(
    reason: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    sink: DeadLetterSink = _require(_dead_letters, "Dead-letter store")
    return await sink.list(limit=limit, offset=offset, reason=reason)


@operations_router.get("/audit/events")
async def list_audit_events(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    audit: AuditService = _require(_audit, "Audit service")
    return await audit.list_events(limit=limit, offset=offset)


@operations_router.post("/provider/outcomes", status_code=202)
async def provider_outcome(body: ProviderOutcome) -> Dict[str, Any]:
    """Delivery-provider callback; forwarded to webhook subscribers."""
    queue: PriorityDispatchQueue = _require(_queue, "Dispatch queue")
    dispatcher: WebhookDispatcher = _require(_dispatcher, "Webhook dispatcher")

    item = await queue.find_by_delivery_id(body.delivery_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Unknown delivery {body.delivery_id}")

    event_type = f"notification.{body.status.value}"
    data: Dict[str, Any] = {
        "deliveryId": body.delivery_id,
        "queueItemId": item.id,
        "correlationId": body.correlation_id or item.correlation_id,
        "sourceService": item.request.source_service,
        "contentId": item.request.content_id,
        "status": body.status.value,
        **body.details,
    }
    if body.error:
        data["error"] = body.error
    if body.occurred_at:
        data["occurredAt"] = body.occurred_at.isoformat()

    attempts = await dispatcher.trigger(event_type, data)
    logger.info(
        "Provider outcome %s for %s forwarded to %s webhook(s)",
        body.status.value,
        body.delivery_id,
        len(attempts),
        extra={"trace_id": data["correlationId"] or ""},
    )
    return {"accepted": True, "event_type": event_type, "deliveries": len(attempts)}
