"""
Priority dispatch queue.

Responsibilities:
- Persist NotificationRequests as QueueItems in the document store
- Hand out work strictly by tier, then enqueue time, then sequence
- Collapse re-enqueues sharing a correlation id (last write wins)
- Track worker attempts and dead-letter items that exhaust them
- Reclaim items left in processing past their lease
- Run a polling worker that delivers through a DeliveryProvider and reports
  outcomes to registered listeners
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..messaging.dead_letters import DeadLetterSink
from ..messaging.models import DeadLetterReason
from ..monitoring.metrics import queue_enqueued_total, queue_pending, queue_processed_total
from ..storage.documents import DocumentStore
from .models import NotificationPriority, NotificationRequest, QueueItem, QueueItemStatus
from .provider import DeliveryProvider

logger = logging.getLogger(__name__)

QUEUE_COLLECTION = "queue_items"

LIVE_STATUSES = (QueueItemStatus.PENDING, QueueItemStatus.PROCESSING)

# (event_type, item, details)
OutcomeListener = Callable[[str, QueueItem, Dict[str, Any]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _lease_expired(doc: Dict[str, Any], expired_before: datetime) -> bool:
    touched = QueueItem.from_document(doc).updated_at
    return touched is None or _as_utc(touched) <= expired_before


class PriorityDispatchQueue:
    def __init__(
        self,
        store: DocumentStore,
        dead_letters: Optional[DeadLetterSink] = None,
        max_attempts: int = 3,
        batch_size: int = 10,
        lease_seconds: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.dead_letters = dead_letters
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self._clock = clock or _utcnow
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._listeners: List[OutcomeListener] = []

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    async def _live_item(self, correlation_id: str) -> Optional[QueueItem]:
        docs = await self.store.find(QUEUE_COLLECTION, {"correlation_id": correlation_id})
        for doc in docs:
            item = QueueItem.from_document(doc)
            if item.status in LIVE_STATUSES:
                return item
        return None

    async def enqueue(self, request: NotificationRequest) -> QueueItem:
        async with self._lock:
            now = self._clock()
            existing = None
            if request.correlation_id:
                existing = await self._live_item(request.correlation_id)

            if existing is not None:
                # Keeps its place in line; a worker still holding the old
                # revision can no longer settle it.
                item = existing.model_copy(
                    update={
                        "request": request,
                        "priority_tier": request.priority,
                        "status": QueueItemStatus.PENDING,
                        "attempt_count": 0,
                        "revision": existing.revision + 1,
                        "last_error": None,
                        "updated_at": now,
                    }
                )
                await self.store.upsert(QUEUE_COLLECTION, item.to_document())
                logger.info(
                    "Replaced queue item %s (revision %s)",
                    item.id,
                    item.revision,
                    extra={"trace_id": request.correlation_id},
                )
            else:
                item = QueueItem(
                    request=request,
                    priority_tier=request.priority,
                    enqueued_at=now,
                    sequence=next(self._sequence),
                    updated_at=now,
                )
                await self.store.insert(QUEUE_COLLECTION, item.to_document())
                logger.info(
                    "Enqueued %s item %s",
                    item.priority_tier.value,
                    item.id,
                    extra={"trace_id": request.correlation_id or ""},
                )
        queue_enqueued_total.labels(priority=item.priority_tier.value).inc()
        return item

    async def next_batch(self, max_items: Optional[int] = None) -> List[QueueItem]:
        """Claim up to max_items items in priority order (pending -> processing).

        Items left in processing longer than the lease (a worker died or its
        settle failed) are claimed again alongside pending ones.
        """
        limit = self.batch_size if max_items is None else max_items
        if limit <= 0:
            return []
        async with self._lock:
            now = _as_utc(self._clock())
            expired_before = now - timedelta(seconds=self.lease_seconds)
            docs = await self.store.find(QUEUE_COLLECTION, {"status": QueueItemStatus.PENDING.value})
            docs += [
                d
                for d in await self.store.find(
                    QUEUE_COLLECTION, {"status": QueueItemStatus.PROCESSING.value}
                )
                if _lease_expired(d, expired_before)
            ]
            candidates = sorted(
                (QueueItem.from_document(d) for d in docs), key=QueueItem.sort_key
            )
            batch: List[QueueItem] = []
            for item in candidates:
                if len(batch) >= limit:
                    break
                scheduled = item.request.scheduled_at
                if scheduled is not None and _as_utc(scheduled) > now:
                    continue
                expected: Dict[str, Any] = {"revision": item.revision, "status": item.status.value}
                changes: Dict[str, Any] = {
                    "status": QueueItemStatus.PROCESSING.value,
                    "attempt_count": item.attempt_count + 1,
                    "updated_at": now.isoformat(),
                }
                if item.status == QueueItemStatus.PROCESSING:
                    # The previous holder can no longer settle it
                    changes["revision"] = item.revision + 1
                    logger.warning(
                        "Reclaiming queue item %s after lease expiry",
                        item.id,
                        extra={"trace_id": item.correlation_id or ""},
                    )
                updated = await self.store.update(
                    QUEUE_COLLECTION, item.id, changes, expected=expected
                )
                if updated is not None:
                    batch.append(QueueItem.from_document(updated))
        return batch

    async def _settle(
        self, item: QueueItem, changes: Dict[str, Any]
    ) -> Optional[QueueItem]:
        changes = dict(changes, updated_at=self._clock().isoformat())
        updated = await self.store.update(
            QUEUE_COLLECTION,
            item.id,
            changes,
            expected={"revision": item.revision, "status": QueueItemStatus.PROCESSING.value},
        )
        if updated is None:
            logger.info(
                "Ignoring stale update for queue item %s (revision %s)", item.id, item.revision
            )
            return None
        return QueueItem.from_document(updated)

    async def mark_done(self, item: QueueItem, delivery_id: Optional[str] = None) -> bool:
        settled = await self._settle(
            item, {"status": QueueItemStatus.DONE.value, "delivery_id": delivery_id}
        )
        if settled is not None:
            queue_processed_total.labels(status=QueueItemStatus.DONE.value).inc()
        return settled is not None

    async def mark_failed(self, item: QueueItem, error: str) -> Optional[QueueItemStatus]:
        """Return the item to pending, or mark it dead once attempts are exhausted.

        An item only becomes dead after its dead letter is published; if that
        publish fails the item goes back to pending and is retried later.
        Returns the new status, or None when the item was replaced meanwhile.
        """
        if item.attempt_count < self.max_attempts:
            settled = await self._settle(
                item, {"status": QueueItemStatus.PENDING.value, "last_error": error}
            )
            return QueueItemStatus.PENDING if settled is not None else None

        # Held so a concurrent replace cannot slip in between the DLQ publish and the settle
        async with self._lock:
            current = await self.get(item.id)
            if (
                current is None
                or current.revision != item.revision
                or current.status != QueueItemStatus.PROCESSING
            ):
                logger.info("Ignoring stale failure for queue item %s", item.id)
                return None
            if self.dead_letters is not None:
                dead = current.model_copy(
                    update={"status": QueueItemStatus.DEAD, "last_error": error}
                )
                try:
                    await self.dead_letters.emit(
                        dead.to_document(),
                        DeadLetterReason.RETRIES_EXHAUSTED,
                        correlation_id=item.correlation_id,
                        errors=[error],
                        source="queue",
                    )
                except Exception as e:  # noqa: BLE001
                    logger.error(
                        "Could not dead-letter queue item %s, returning it to pending: %s",
                        item.id,
                        e,
                        extra={"trace_id": item.correlation_id or ""},
                    )
                    settled = await self._settle(
                        item,
                        {
                            "status": QueueItemStatus.PENDING.value,
                            "last_error": f"{error}; dead-letter failed: {e}",
                        },
                    )
                    return QueueItemStatus.PENDING if settled is not None else None
            settled = await self._settle(
                item, {"status": QueueItemStatus.DEAD.value, "last_error": error}
            )
        if settled is None:
            return None
        queue_processed_total.labels(status=QueueItemStatus.DEAD.value).inc()
        logger.error(
            "Queue item %s dead after %s attempts: %s",
            item.id,
            item.attempt_count,
            error,
            extra={"trace_id": item.correlation_id or ""},
        )
        return QueueItemStatus.DEAD

    async def process_batch(
        self, provider: DeliveryProvider, max_items: Optional[int] = None
    ) -> List[Tuple[QueueItem, QueueItemStatus]]:
        results: List[Tuple[QueueItem, QueueItemStatus]] = []
        for item in await self.next_batch(max_items):
            try:
                status = await self._process_item(provider, item)
            except Exception:  # noqa: BLE001
                # Left in processing; reclaimed once its lease expires
                logger.exception(
                    "Failed to settle queue item %s",
                    item.id,
                    extra={"trace_id": item.correlation_id or ""},
                )
                continue
            if status is not None:
                results.append((item, status))
        await self._refresh_gauge()
        return results

    async def _process_item(
        self, provider: DeliveryProvider, item: QueueItem
    ) -> Optional[QueueItemStatus]:
        try:
            delivery_id = await provider.send(item.request)
        except Exception as e:  # noqa: BLE001
            status = await self.mark_failed(item, str(e))
            if status == QueueItemStatus.DEAD:
                await self._notify("notification.failed", item, {"error": str(e)})
            return status
        if not await self.mark_done(item, delivery_id):
            return None
        await self._notify("notification.sent", item, {"deliveryId": delivery_id})
        return QueueItemStatus.DONE

    async def _notify(self, event_type: str, item: QueueItem, details: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event_type, item, details)
            except Exception as e:  # noqa: BLE001
                logger.error("queue outcome listener error: %s", e)

    async def run_worker(
        self,
        provider: DeliveryProvider,
        poll_interval: float = 1.0,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        stop = stop or asyncio.Event()
        logger.info("Queue worker started (batch=%s)", self.batch_size)
        while not stop.is_set():
            try:
                results = await self.process_batch(provider)
            except Exception:  # noqa: BLE001
                logger.exception("queue worker iteration failed")
                results = []
            if results:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Queue worker stopped")

    async def get(self, item_id: str) -> Optional[QueueItem]:
        doc = await self.store.get(QUEUE_COLLECTION, item_id)
        return QueueItem.from_document(doc) if doc is not None else None

    async def find_by_correlation_id(self, correlation_id: str) -> List[QueueItem]:
        docs = await self.store.find(QUEUE_COLLECTION, {"correlation_id": correlation_id})
        return [QueueItem.from_document(d) for d in docs]

    async def find_by_delivery_id(self, delivery_id: str) -> Optional[QueueItem]:
        docs = await self.store.find(QUEUE_COLLECTION, {"delivery_id": delivery_id}, limit=1)
        return QueueItem.from_document(docs[0]) if docs else None

    async def live_items(self) -> List[QueueItem]:
        docs = await self.store.find(QUEUE_COLLECTION)
        items = [QueueItem.from_document(d) for d in docs]
        return sorted((i for i in items if i.status in LIVE_STATUSES), key=QueueItem.sort_key)

    async def status(self) -> Dict[str, Any]:
        docs = await self.store.find(QUEUE_COLLECTION)
        by_status = {s.value: 0 for s in QueueItemStatus}
        pending_by_priority = {p.value: 0 for p in NotificationPriority}
        for doc in docs:
            by_status[doc["status"]] = by_status.get(doc["status"], 0) + 1
            if doc["status"] == QueueItemStatus.PENDING.value:
                tier = doc["priority_tier"]
                pending_by_priority[tier] = pending_by_priority.get(tier, 0) + 1
        queue_pending.set(by_status[QueueItemStatus.PENDING.value])
        return {
            "total": len(docs),
            "by_status": by_status,
            "pending_by_priority": pending_by_priority,
        }

    async def _refresh_gauge(self) -> None:
        count = await self.store.count(QUEUE_COLLECTION, {"status": QueueItemStatus.PENDING.value})
        queue_pending.set(count)
