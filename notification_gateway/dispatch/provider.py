"""
Outbound delivery providers invoked by the queue worker.

``send(request)`` returns the provider's delivery id or raises
TransientDeliveryError. Final delivery outcomes arrive later through the
provider callback endpoint.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol
from uuid import uuid4

import httpx

from ..errors import TransientDeliveryError
from .models import NotificationRequest

logger = logging.getLogger(__name__)


class DeliveryProvider(Protocol):
    async def send(self, request: NotificationRequest) -> str: ...


class DryRunDeliveryProvider:
    """Accepts everything without sending; used when no provider URL is set."""

    def __init__(self) -> None:
        self.sent: List[NotificationRequest] = []

    async def send(self, request: NotificationRequest) -> str:
        self.sent.append(request)
        delivery_id = f"dry-run-{uuid4()}"
        logger.info(
            "dry_run delivery %s for %s via %s",
            delivery_id,
            request.content_id,
            ",".join(c.value for c in request.channels),
            extra={"trace_id": request.correlation_id or ""},
        )
        return delivery_id


class HttpDeliveryProvider:
    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def send(self, request: NotificationRequest) -> str:
        body = request.model_dump(mode="json")
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"provider unreachable: {e}") from e

        if resp.status_code >= 400:
            raise TransientDeliveryError(
                f"provider returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError:
            data = {}
        delivery_id = (data.get("deliveryId") or data.get("id")) if isinstance(data, dict) else None
        return str(delivery_id or uuid4())


def select_provider(settings) -> DeliveryProvider:
    if settings.delivery_provider_url:
        return HttpDeliveryProvider(settings.delivery_provider_url, settings.delivery_timeout)
    logger.warning("DELIVERY_PROVIDER_URL not set; deliveries run in dry-run mode")
    return DryRunDeliveryProvider()
