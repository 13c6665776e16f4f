"""
Event handlers that feed normalized events into the priority queue.
"""

from __future__ import annotations

import logging

from ..messaging.models import NormalizedEvent
from .models import QueueItem
from .service import PriorityDispatchQueue

logger = logging.getLogger(__name__)


class NotificationEventHandler:
    """Enqueues the canonical request carried by any notification-producing event."""

    def __init__(self, queue: PriorityDispatchQueue):
        self.queue = queue

    async def handle(self, event: NormalizedEvent) -> QueueItem:
        item = await self.queue.enqueue(event.request)
        logger.debug(
            "%s -> queue item %s",
            event.event_type,
            item.id,
            extra={"trace_id": event.correlation_id},
        )
        return item
