"""
Dead-letter sink: terminal routing for messages the gateway cannot process.

Each record is published to the DLQ routing key on the broker and appended
to the ``dead_letters`` collection for operator listing.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..audit.service import AuditCategory, AuditService
from ..monitoring.metrics import dead_letters_total
from ..storage.documents import DocumentStore
from .broker import BrokerClient
from .models import DeadLetterReason, DeadLetterRecord

logger = logging.getLogger(__name__)

DEAD_LETTER_COLLECTION = "dead_letters"


class DeadLetterSink:
    def __init__(
        self,
        broker: BrokerClient,
        store: DocumentStore,
        exchange: str = "notifications",
        routing_key: str = "dlq.notification",
        audit_service: Optional[AuditService] = None,
    ):
        self.broker = broker
        self.store = store
        self.exchange = exchange
        self.routing_key = routing_key
        self.audit_service = audit_service

    async def emit(
        self,
        message: Any,
        reason: DeadLetterReason,
        correlation_id: Optional[str] = None,
        errors: Optional[List[str]] = None,
        source: str = "consumer",
    ) -> DeadLetterRecord:
        """Publish the record to the DLQ. Raises if the broker publish fails."""
        record = DeadLetterRecord(
            message=message,
            reason=reason,
            correlation_id=correlation_id,
            errors=list(errors or []),
            source=source,
        )
        await self.broker.publish(self.exchange, self.routing_key, record.to_wire())
        dead_letters_total.labels(reason=record.reason).inc()
        logger.warning(
            "dead-lettered message (%s): %s",
            record.reason,
            "; ".join(record.errors) or "no details",
            extra={"trace_id": correlation_id or ""},
        )

        try:
            await self.store.insert(DEAD_LETTER_COLLECTION, record.model_dump(mode="json"))
        except Exception:  # noqa: BLE001
            # The broker copy is authoritative; the stored copy only feeds listings
            logger.exception("failed to persist dead letter %s", record.id)

        if self.audit_service is not None:
            await self.audit_service.log_event(
                event_type="dead_letter",
                category=AuditCategory.PIPELINE,
                action="dead_letter",
                result=record.reason,
                description=f"Message dead-lettered from {source}",
                resource_type="dead_letter",
                resource_id=record.id,
                correlation_id=correlation_id,
                details={"errors": record.errors},
            )
        return record

    async def list(
        self, limit: int = 50, offset: int = 0, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        filters = {"reason": reason} if reason else None
        items = await self.store.find(
            DEAD_LETTER_COLLECTION,
            filters,
            sort=[("timestamp", -1)],
            limit=limit,
            offset=offset,
        )
        total = await self.store.count(DEAD_LETTER_COLLECTION, filters)
        return {"items": items, "total": total, "limit": limit, "offset": offset}
