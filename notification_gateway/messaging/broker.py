"""
Broker adapters for event consumption and dead-letter publishing.

Both adapters share one routing rule: publish(exchange, routing_key, msg)
lands on the queue named "{exchange}.{routing_key}", which is what
consume() reads from. Prefetch is enforced here, by the broker client,
as the bound on unacknowledged deliveries per consumer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

logger = logging.getLogger(__name__)


def queue_for(exchange: str, routing_key: str) -> str:
    return f"{exchange}.{routing_key}" if exchange else routing_key


def encode_message(message: Any) -> bytes:
    if isinstance(message, (bytes, bytearray)):
        return bytes(message)
    if isinstance(message, str):
        return message.encode("utf-8")
    return json.dumps(message, separators=(",", ":"), default=str).encode("utf-8")


@dataclass
class BrokerMessage:
    """One delivery. The consumer settles it exactly once via ack() or nack()."""

    body: bytes
    message_id: str
    queue: str
    _ack: Callable[[], Awaitable[None]]
    _nack: Callable[[bool], Awaitable[None]]
    settled: bool = False
    redelivered: bool = False

    async def ack(self) -> None:
        if self.settled:
            return
        self.settled = True
        await self._ack()

    async def nack(self, requeue: bool = False) -> None:
        if self.settled:
            return
        self.settled = True
        await self._nack(requeue)


MessageHandler = Callable[[BrokerMessage], Awaitable[None]]


class BrokerClient(Protocol):
    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    async def publish(self, exchange: str, routing_key: str, message: Any) -> None: ...
    async def consume(
        self,
        queue_name: str,
        handler: MessageHandler,
        *,
        consumer_tag: str,
        prefetch: int = 10,
    ) -> str: ...
    async def cancel(self, consumer_tag: str) -> None: ...


@dataclass
class _Consumer:
    tag: str
    queue: str
    prefetch: int
    slots: asyncio.Semaphore
    task: Optional[asyncio.Task] = None
    inflight: Dict[str, asyncio.Task] = field(default_factory=dict)


async def _stop_loop(consumer: _Consumer) -> None:
    if consumer.task is None:
        return
    consumer.task.cancel()
    try:
        await consumer.task
    except asyncio.CancelledError:
        pass
    consumer.task = None


class InMemoryBroker:
    """In-process broker used by default and for tests."""

    def __init__(self) -> None:
        self._queues: Dict[str, asyncio.Queue] = {}
        self._consumers: Dict[str, _Consumer] = {}
        self._unacked: Dict[str, int] = {}
        self.published: List[Tuple[str, str, bytes]] = []
        self._running = False

    def _queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False
        for consumer in list(self._consumers.values()):
            await _stop_loop(consumer)
            for task in list(consumer.inflight.values()):
                task.cancel()
        self._consumers.clear()

    async def cancel(self, consumer_tag: str) -> None:
        """Detach one consumer. Deliveries already in flight still settle."""
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return
        await _stop_loop(consumer)
        logger.info("consumer %s detached from %s", consumer_tag, consumer.queue)

    async def publish(self, exchange: str, routing_key: str, message: Any) -> None:
        body = encode_message(message)
        self.published.append((exchange, routing_key, body))
        await self._queue(queue_for(exchange, routing_key)).put((str(uuid4()), body, False))

    def messages(self, exchange: str, routing_key: str) -> List[Dict[str, Any]]:
        """Decoded bodies published to one routing key (inspection helper)."""
        return [
            json.loads(body.decode("utf-8"))
            for ex, rk, body in self.published
            if ex == exchange and rk == routing_key
        ]

    def unacked(self, queue_name: str) -> int:
        return self._unacked.get(queue_name, 0)

    async def consume(
        self,
        queue_name: str,
        handler: MessageHandler,
        *,
        consumer_tag: str,
        prefetch: int = 10,
    ) -> str:
        if consumer_tag in self._consumers:
            raise ValueError(f"consumer tag already registered: {consumer_tag}")
        consumer = _Consumer(
            tag=consumer_tag,
            queue=queue_name,
            prefetch=prefetch,
            slots=asyncio.Semaphore(prefetch),
        )
        self._consumers[consumer_tag] = consumer
        consumer.task = asyncio.create_task(self._consume_loop(consumer, handler))
        logger.info("consumer %s attached to %s (prefetch=%s)", consumer_tag, queue_name, prefetch)
        return consumer_tag

    async def _consume_loop(self, consumer: _Consumer, handler: MessageHandler) -> None:
        queue = self._queue(consumer.queue)
        while True:
            await consumer.slots.acquire()
            try:
                message_id, body, redelivered = await queue.get()
            except asyncio.CancelledError:
                consumer.slots.release()
                raise
            self._unacked[consumer.queue] = self._unacked.get(consumer.queue, 0) + 1
            message = self._make_message(consumer, message_id, body, redelivered)
            task = asyncio.create_task(self._deliver(handler, message))
            consumer.inflight[message_id] = task

    def _make_message(
        self, consumer: _Consumer, message_id: str, body: bytes, redelivered: bool
    ) -> BrokerMessage:
        def _settle() -> None:
            self._unacked[consumer.queue] = max(0, self._unacked.get(consumer.queue, 0) - 1)
            consumer.inflight.pop(message_id, None)
            consumer.slots.release()

        async def _ack() -> None:
            _settle()

        async def _nack(requeue: bool) -> None:
            _settle()
            if requeue:
                await self._queue(consumer.queue).put((message_id, body, True))

        return BrokerMessage(
            body=body,
            message_id=message_id,
            queue=consumer.queue,
            _ack=_ack,
            _nack=_nack,
            redelivered=redelivered,
        )

    async def _deliver(self, handler: MessageHandler, message: BrokerMessage) -> None:
        try:
            await handler(message)
        except Exception as e:  # noqa: BLE001
            logger.exception("InMemoryBroker handler error: %s", e)
            await message.nack(requeue=False)

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until every consumed queue is drained and nothing is left unacknowledged."""

        async def _poll() -> None:
            while True:
                consumed = {c.queue for c in self._consumers.values()}
                pending = any(not self._queue(name).empty() for name in consumed)
                inflight = any(v > 0 for v in self._unacked.values())
                if not pending and not inflight:
                    return
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout=timeout)


class RedisStreamsBroker:
    """Redis Streams adapter with consumer groups and ack/reclaim.

    Each queue is a stream; each consumer tag is a consumer within the
    group, so horizontally scaled instances read disjoint entries.
    """

    def __init__(
        self,
        url: str,
        group: str = "notification-gateway",
        maxlen: int = 10000,
        retry_idle_ms: int = 60000,
    ) -> None:
        self._url = url
        self._group = group
        self._maxlen = maxlen
        self._retry_idle_ms = retry_idle_ms
        self._redis: Optional[Any] = None
        self._consumers: Dict[str, _Consumer] = {}

    async def start(self) -> None:
        import redis.asyncio as redis  # type: ignore

        if self._redis is None:
            self._redis = redis.from_url(self._url)

    async def stop(self) -> None:
        for consumer in list(self._consumers.values()):
            await _stop_loop(consumer)
        self._consumers.clear()
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return
        await _stop_loop(consumer)
        logger.info("consumer %s detached from stream %s", consumer_tag, consumer.queue)

    async def publish(self, exchange: str, routing_key: str, message: Any) -> None:
        assert self._redis is not None, "broker not started"
        await self._redis.xadd(
            name=queue_for(exchange, routing_key),
            id="*",
            fields={"d": encode_message(message)},
            maxlen=self._maxlen,
            approximate=True,
        )

    async def consume(
        self,
        queue_name: str,
        handler: MessageHandler,
        *,
        consumer_tag: str,
        prefetch: int = 10,
    ) -> str:
        from redis.exceptions import ResponseError  # type: ignore

        assert self._redis is not None, "broker not started"
        try:
            await self._redis.xgroup_create(
                name=queue_name, groupname=self._group, id="0", mkstream=True
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        consumer = _Consumer(
            tag=consumer_tag,
            queue=queue_name,
            prefetch=prefetch,
            slots=asyncio.Semaphore(prefetch),
        )
        self._consumers[consumer_tag] = consumer
        consumer.task = asyncio.create_task(self._consume_loop(consumer, handler))
        logger.info("consumer %s attached to stream %s (prefetch=%s)", consumer_tag, queue_name, prefetch)
        return consumer_tag

    async def _consume_loop(self, consumer: _Consumer, handler: MessageHandler) -> None:
        assert self._redis is not None
        while True:
            try:
                await consumer.slots.acquire()
                free = 1
                while free < consumer.prefetch and not consumer.slots.locked():
                    await consumer.slots.acquire()
                    free += 1
                msgs = await self._redis.xreadgroup(
                    groupname=self._group,
                    consumername=consumer.tag,
                    streams={consumer.queue: ">"},
                    count=free,
                    block=2000,
                )
                delivered = 0
                for _stream, entries in msgs or []:
                    for mid, fields in entries:
                        self._dispatch(consumer, handler, mid, fields, redelivered=False)
                        delivered += 1
                for _ in range(free - delivered):
                    consumer.slots.release()
                if not delivered:
                    await self._reclaim_pending(consumer, handler)
            except asyncio.CancelledError:
                break
            except Exception:  # noqa: BLE001
                logger.warning("redis consume loop error", exc_info=True)
                await asyncio.sleep(1.0)

    def _dispatch(
        self,
        consumer: _Consumer,
        handler: MessageHandler,
        mid: Any,
        fields: Any,
        redelivered: bool,
    ) -> None:
        assert self._redis is not None
        redis_client = self._redis
        message_id = mid.decode("utf-8") if isinstance(mid, bytes) else str(mid)
        raw = fields.get(b"d", fields.get("d")) if isinstance(fields, dict) else None
        body = raw if isinstance(raw, bytes) else str(raw or "").encode("utf-8")

        async def _ack() -> None:
            try:
                await redis_client.xack(consumer.queue, self._group, mid)
                await redis_client.xdel(consumer.queue, mid)
            finally:
                consumer.inflight.pop(message_id, None)
                consumer.slots.release()

        async def _nack(requeue: bool) -> None:
            try:
                if not requeue:
                    await redis_client.xack(consumer.queue, self._group, mid)
                # requeue: leave in the pending list for reclaim
            finally:
                consumer.inflight.pop(message_id, None)
                consumer.slots.release()

        message = BrokerMessage(
            body=body,
            message_id=message_id,
            queue=consumer.queue,
            _ack=_ack,
            _nack=_nack,
            redelivered=redelivered,
        )

        async def _run() -> None:
            try:
                await handler(message)
            except Exception:  # noqa: BLE001
                logger.exception("redis handler error for %s", message_id)
                await message.nack(requeue=True)

        consumer.inflight[message_id] = asyncio.create_task(_run())

    async def _reclaim_pending(self, consumer: _Consumer, handler: MessageHandler) -> None:
        assert self._redis is not None
        try:
            pend = await self._redis.xpending_range(
                name=consumer.queue,
                groupname=self._group,
                min="-",
                max="+",
                count=consumer.prefetch,
            )
            claim_ids = []
            for p in pend or []:
                mid = p.get("message_id") if isinstance(p, dict) else getattr(p, "message_id", None)
                idle = p.get("time_since_delivered", 0) if isinstance(p, dict) else 0
                mid_str = mid.decode("utf-8") if isinstance(mid, bytes) else str(mid)
                if mid and idle >= self._retry_idle_ms and mid_str not in consumer.inflight:
                    claim_ids.append(mid)
            if not claim_ids:
                return
            entries = await self._redis.xclaim(
                name=consumer.queue,
                groupname=self._group,
                consumername=consumer.tag,
                min_idle_time=self._retry_idle_ms,
                message_ids=claim_ids,
            )
            for mid, fields in entries or []:
                await consumer.slots.acquire()
                self._dispatch(consumer, handler, mid, fields, redelivered=True)
        except Exception:  # noqa: BLE001
            logger.debug("redis reclaim failed", exc_info=True)


def select_broker(settings: Any) -> BrokerClient:
    backend = (getattr(settings, "event_bus_backend", "memory") or "memory").lower()
    if backend == "redis_streams":
        return RedisStreamsBroker(settings.redis_url)
    return InMemoryBroker()
