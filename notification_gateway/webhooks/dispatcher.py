"""
Signed, retried delivery of outcome events to webhook subscribers.

Each HTTP try is recorded as its own DeliveryAttempt in the
``webhook_deliveries`` collection: ``retrying`` while budget remains,
then ``failed``, or ``success``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..errors import TransientDeliveryError
from ..messaging.retry import RetryPolicy, SleepFn, execute_with_retry
from ..monitoring.metrics import webhook_deliveries_total, webhook_delivery_latency
from ..storage.documents import DocumentStore
from .models import DeliveryAttempt, DeliveryStatus, Webhook, WebhookEvent
from .service import WebhookRegistry
from .signing import SIGNATURE_HEADER, sign

logger = logging.getLogger(__name__)

DELIVERY_COLLECTION = "webhook_deliveries"

USER_AGENT = "notification-gateway-webhooks/1.0"


def serialize_event(event: WebhookEvent) -> bytes:
    body = {
        "id": event.id,
        "type": event.type,
        "timestamp": event.timestamp.isoformat(),
        "data": event.data,
    }
    return json.dumps(body, separators=(",", ":"), default=str).encode("utf-8")


class WebhookDispatcher:
    def __init__(
        self,
        registry: WebhookRegistry,
        store: DocumentStore,
        client: Optional[httpx.AsyncClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.store = store
        self._client = client
        self._sleep = sleep

    def _headers(self, webhook: Webhook, event: WebhookEvent, body: bytes) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Id": webhook.id,
            "X-Webhook-Event": event.type,
            "X-Webhook-Delivery": event.id,
        }
        headers.update(webhook.headers or {})
        if webhook.secret:
            headers[SIGNATURE_HEADER] = sign(webhook.secret, body)
        return headers

    async def deliver(self, webhook: Webhook, event: WebhookEvent) -> DeliveryAttempt:
        """Deliver one event, retrying per the webhook's settings. Returns the last attempt."""
        body = serialize_event(event)
        headers = self._headers(webhook, event, body)
        timeout_s = webhook.timeout / 1000.0
        policy = RetryPolicy.fixed(
            max_attempts=webhook.retry_count + 1,
            delay_seconds=webhook.retry_delay / 1000.0,
            attempt_timeout=timeout_s,
        )
        attempts: List[DeliveryAttempt] = []
        current: Dict[str, Any] = {}

        async def _post(client: httpx.AsyncClient) -> int:
            current.clear()
            current["sent_at"] = datetime.now(tz=timezone.utc)
            started = time.perf_counter()
            try:
                resp = await client.post(webhook.url, content=body, headers=headers, timeout=timeout_s)
            finally:
                current["duration_ms"] = (time.perf_counter() - started) * 1000.0
                webhook_delivery_latency.observe(current["duration_ms"] / 1000.0)
            current["status_code"] = resp.status_code
            if not 200 <= resp.status_code < 300:
                raise TransientDeliveryError(
                    f"HTTP {resp.status_code}", status_code=resp.status_code
                )
            return resp.status_code

        async def _record(attempt: int, error: Optional[BaseException]) -> None:
            if error is None:
                status = DeliveryStatus.SUCCESS
            elif attempt < policy.max_attempts:
                status = DeliveryStatus.RETRYING
            else:
                status = DeliveryStatus.FAILED
            if isinstance(error, asyncio.TimeoutError):
                current.setdefault("duration_ms", timeout_s * 1000.0)
            record = DeliveryAttempt(
                webhook_id=webhook.id,
                event_id=event.id,
                event_type=event.type,
                status=status,
                attempt=attempt,
                sent_at=current.get("sent_at"),
                status_code=current.get("status_code"),
                error=(str(error) or type(error).__name__) if error is not None else None,
                duration_ms=current.get("duration_ms"),
            )
            attempts.append(record)
            webhook_deliveries_total.labels(status=status.value).inc()
            await self.store.insert(DELIVERY_COLLECTION, record.model_dump(mode="json"))

        async def _run(client: httpx.AsyncClient) -> None:
            result = await execute_with_retry(
                lambda: _post(client),
                policy,
                label="webhook_delivery",
                sleep=self._sleep,
                on_attempt=_record,
            )
            if result.success:
                logger.info(
                    "Delivered %s to webhook %s in %s attempt(s)",
                    event.type,
                    webhook.id,
                    result.attempts,
                )
            else:
                logger.warning(
                    "Webhook %s delivery of %s failed after %s attempt(s): %s",
                    webhook.id,
                    event.type,
                    result.attempts,
                    result.error,
                )

        if self._client is not None:
            await _run(self._client)
        else:
            async with httpx.AsyncClient() as client:
                await _run(client)
        return attempts[-1]

    async def trigger(
        self, event_type: str, data: Dict[str, Any], event_id: Optional[str] = None
    ) -> List[DeliveryAttempt]:
        """Fan an event out to every active webhook subscribed to its type."""
        webhooks = await self.registry.by_event_type(event_type, active_only=True)
        if not webhooks:
            logger.debug("No active webhooks for %s", event_type)
            return []
        event = WebhookEvent(type=event_type, data=data)
        if event_id:
            event = event.model_copy(update={"id": event_id})
        results = await asyncio.gather(
            *(self.deliver(w, event) for w in webhooks), return_exceptions=True
        )
        out: List[DeliveryAttempt] = []
        for webhook, res in zip(webhooks, results):
            if isinstance(res, BaseException):
                logger.error("Webhook %s dispatch error: %s", webhook.id, res)
                continue
            out.append(res)
        return out

    async def get_deliveries(
        self, webhook_id: str, limit: int = 50, offset: int = 0
    ) -> Dict[str, Any]:
        await self.registry.get(webhook_id)
        filters = {"webhook_id": webhook_id}
        items = await self.store.find(
            DELIVERY_COLLECTION,
            filters,
            sort=[("sent_at", -1), ("attempt", -1)],
            limit=limit,
            offset=offset,
        )
        total = await self.store.count(DELIVERY_COLLECTION, filters)
        return {
            "items": [DeliveryAttempt.model_validate(d) for d in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def send_test(self, webhook_id: str) -> DeliveryAttempt:
        """Deliver a synthetic event to one webhook, active or not."""
        webhook = await self.registry.get(webhook_id)
        event_type = webhook.events[0].value
        event = WebhookEvent(
            type=event_type,
            data={"test": True, "message": "This is a test webhook delivery", "webhookId": webhook.id},
        )
        return await self.deliver(webhook, event)

    async def on_queue_outcome(self, event_type: str, item: Any, details: Dict[str, Any]) -> None:
        """Queue outcome listener: forwards sent/failed outcomes to subscribers."""
        request = item.request
        await self.trigger(
            event_type,
            {
                "queueItemId": item.id,
                "correlationId": item.correlation_id,
                "sourceService": request.source_service,
                "contentId": request.content_id,
                "type": request.type.value,
                "priority": item.priority_tier.value,
                "attempts": item.attempt_count,
                **details,
            },
        )
