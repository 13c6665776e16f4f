"""
Gateway runtime: owns the broker connection, the store, and every service
built on them, and starts/stops them in order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .audit.service import AuditService
from .config.redirects import RedirectPatterns
from .config.settings import GatewaySettings
from .dispatch.handlers import NotificationEventHandler
from .dispatch.provider import DeliveryProvider, select_provider
from .dispatch.service import PriorityDispatchQueue
from .messaging.broker import BrokerClient, select_broker
from .messaging.consumer import EventHandler, HandlerRegistry, MessageConsumer
from .messaging.dead_letters import DeadLetterSink
from .messaging.normalizer import EventNormalizer
from .messaging.retry import RetryPolicy, SleepFn
from .messaging.validation import EventValidator
from .storage.documents import DocumentStore, select_store
from .webhooks.dispatcher import WebhookDispatcher
from .webhooks.service import WebhookRegistry

logger = logging.getLogger(__name__)


class GatewayRuntime:
    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        *,
        broker: Optional[BrokerClient] = None,
        store: Optional[DocumentStore] = None,
        provider: Optional[DeliveryProvider] = None,
        redirects: Optional[RedirectPatterns] = None,
        audit_service: Optional[AuditService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
        run_worker: bool = True,
    ) -> None:
        self.settings = settings or GatewaySettings.from_env()
        self.audit_service = audit_service or AuditService()
        self.broker = broker or select_broker(self.settings)
        self.store = store or select_store(self.settings)
        self.redirects = redirects or RedirectPatterns.from_env()
        self.provider = provider or select_provider(self.settings)

        self.dead_letters = DeadLetterSink(
            self.broker,
            self.store,
            exchange=self.settings.exchange,
            routing_key=self.settings.dlq_routing_key,
            audit_service=self.audit_service,
        )
        self.queue = PriorityDispatchQueue(
            self.store,
            dead_letters=self.dead_letters,
            max_attempts=self.settings.queue_max_attempts,
            batch_size=self.settings.queue_batch_size,
            lease_seconds=self.settings.queue_lease_seconds,
        )
        self.webhooks = WebhookRegistry(self.store, audit_service=self.audit_service)
        self.webhook_dispatcher = WebhookDispatcher(
            self.webhooks, self.store, client=http_client, sleep=sleep
        )
        self.queue.add_outcome_listener(self.webhook_dispatcher.on_queue_outcome)

        self.handlers = HandlerRegistry()
        notification_handler = NotificationEventHandler(self.queue)
        for event_type in self.settings.event_types:
            self.handlers.register(event_type, notification_handler)

        self.consumer = MessageConsumer(
            self.broker,
            self.handlers,
            self.dead_letters,
            validator=EventValidator(),
            normalizer=EventNormalizer(self.redirects),
            retry_policy=retry_policy or RetryPolicy.from_settings(self.settings),
            queue_name=self.settings.queue_name,
            prefetch=self.settings.consumer_prefetch,
            sleep=sleep,
        )
        self._run_worker = run_worker
        self._worker_task: Optional[asyncio.Task] = None
        self._worker_stop: Optional[asyncio.Event] = None
        self._started = False

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        self.handlers.register(event_type, handler)

    async def start(self) -> None:
        if self._started:
            return
        await self.broker.start()
        start_store = getattr(self.store, "start", None)
        if start_store is not None:
            await start_store()
        await self.consumer.start()
        if self._run_worker:
            self._worker_stop = asyncio.Event()
            self._worker_task = asyncio.create_task(
                self.queue.run_worker(
                    self.provider,
                    poll_interval=self.settings.queue_poll_interval,
                    stop=self._worker_stop,
                )
            )
        self._started = True
        logger.info("Gateway runtime started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.consumer.stop()
        if self._worker_task is not None and self._worker_stop is not None:
            self._worker_stop.set()
            try:
                await asyncio.wait_for(self._worker_task, timeout=5.0)
            except asyncio.TimeoutError:
                self._worker_task.cancel()
            self._worker_task = None
        await self.broker.stop()
        stop_store = getattr(self.store, "stop", None)
        if stop_store is not None:
            await stop_store()
        self._started = False
        logger.info("Gateway runtime stopped")

    async def health(self) -> Dict[str, Any]:
        queue_status = await self.queue.status()
        consumer = self.consumer.get_health_status()
        return {
            "status": "healthy" if consumer["consuming"] else "degraded",
            "consumer": consumer,
            "queue": queue_status,
            "worker_running": self._worker_task is not None and not self._worker_task.done(),
        }
