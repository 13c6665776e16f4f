"""
Broker consumer: validate -> normalize -> handle with retry -> ack | dead-letter.

A message is acknowledged only after reaching a terminal state. Nothing
raised while handling one message may stop consumption of the next.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol
from uuid import uuid4

from ..errors import NormalizationError, UnexpectedError, ValidationError
from ..monitoring.metrics import messages_consumed_total
from .broker import BrokerClient, BrokerMessage
from .dead_letters import DeadLetterSink
from .models import DeadLetterReason, NormalizedEvent
from .normalizer import EventNormalizer, new_correlation_id
from .retry import RetryPolicy, SleepFn, execute_with_retry
from .validation import EventValidator

logger = logging.getLogger(__name__)


class EventHandler(Protocol):
    async def handle(self, event: NormalizedEvent) -> Any: ...


class HandlerRegistry:
    """Explicit event type -> handler mapping, populated at startup."""

    def __init__(self, handlers: Optional[Mapping[str, EventHandler]] = None):
        self._handlers: Dict[str, EventHandler] = dict(handlers or {})

    def register(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            logger.warning("Replacing handler for %s", event_type)
        self._handlers[event_type] = handler

    def get(self, event_type: str) -> Optional[EventHandler]:
        return self._handlers.get(event_type)

    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._handlers


def new_consumer_tag() -> str:
    return f"notification-consumer-{os.getpid()}-{int(time.time() * 1000)}-{uuid4().hex[:9]}"


class MessageConsumer:
    def __init__(
        self,
        broker: BrokerClient,
        handlers: HandlerRegistry,
        dead_letters: DeadLetterSink,
        validator: Optional[EventValidator] = None,
        normalizer: Optional[EventNormalizer] = None,
        retry_policy: Optional[RetryPolicy] = None,
        queue_name: str = "notifications.events",
        prefetch: int = 10,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.broker = broker
        self.handlers = handlers
        self.dead_letters = dead_letters
        self.validator = validator or EventValidator()
        self.normalizer = normalizer or EventNormalizer()
        self.retry_policy = retry_policy or RetryPolicy()
        self.queue_name = queue_name
        self.prefetch = prefetch
        self._sleep = sleep
        self.consumer_tag: Optional[str] = None
        self._consuming = False

    async def start(self) -> str:
        if self._consuming and self.consumer_tag:
            return self.consumer_tag
        tag = new_consumer_tag()
        self.consumer_tag = await self.broker.consume(
            self.queue_name,
            self.handle_message,
            consumer_tag=tag,
            prefetch=self.prefetch,
        )
        self._consuming = True
        logger.info(
            "Consuming %s as %s (handlers: %s)",
            self.queue_name,
            self.consumer_tag,
            ", ".join(self.handlers.event_types()) or "none",
        )
        return self.consumer_tag

    async def stop(self) -> None:
        if self._consuming and self.consumer_tag:
            await self.broker.cancel(self.consumer_tag)
        self._consuming = False
        logger.info("Consumer %s stopped", self.consumer_tag)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "consuming": self._consuming,
            "consumer_tag": self.consumer_tag,
            "queue": self.queue_name,
            "prefetch": self.prefetch,
            "handlers": self.handlers.event_types(),
        }

    async def handle_message(self, message: BrokerMessage) -> str:
        """Process one delivery and return its outcome label.

        The pipeline decides a verdict; settlement happens afterwards, so a
        failing ack can never turn a processed message into a dead letter.
        """
        context: Dict[str, Any] = {"raw": None, "correlation_id": None}
        try:
            verdict = await self._evaluate(message, context)
        except Exception as e:  # noqa: BLE001
            error = UnexpectedError(e)
            logger.exception(
                "Unexpected error handling message %s", message.message_id,
                extra={"trace_id": context["correlation_id"] or ""},
            )
            raw = context["raw"]
            verdict = _Verdict.reject(
                raw if raw is not None else message.body.decode("utf-8", errors="replace"),
                DeadLetterReason.UNEXPECTED_ERROR,
                context["correlation_id"],
                [str(error)],
            )

        if verdict.reason is None:
            await self._ack(message, verdict.correlation_id)
            messages_consumed_total.labels(outcome=verdict.outcome).inc()
            return verdict.outcome
        return await self._reject(message, verdict)

    async def _evaluate(self, message: BrokerMessage, context: Dict[str, Any]) -> "_Verdict":
        try:
            raw = json.loads(message.body.decode("utf-8"))
        except ValueError as e:
            return _Verdict.reject(
                message.body.decode("utf-8", errors="replace"),
                DeadLetterReason.VALIDATION_FAILED,
                None,
                [f"invalid JSON: {e}"],
            )
        context["raw"] = raw

        correlation_id: Optional[str] = None
        if isinstance(raw, dict) and isinstance(raw.get("correlationId"), str):
            correlation_id = raw["correlationId"]
        correlation_id = correlation_id or new_correlation_id()
        context["correlation_id"] = correlation_id

        result = self.validator.validate(raw)
        if not result.valid or result.event is None:
            return _Verdict.reject(
                raw, DeadLetterReason.VALIDATION_FAILED, correlation_id, result.errors
            )
        event = result.event

        handler = self.handlers.get(event.event_type)
        if handler is None:
            logger.warning(
                "No handler registered for event type: %s",
                event.event_type,
                extra={"trace_id": correlation_id},
            )
            return _Verdict(outcome="unhandled", correlation_id=correlation_id)

        try:
            request = self.normalizer.normalize(event, correlation_id=correlation_id)
        except NormalizationError as e:
            return _Verdict.reject(
                raw, DeadLetterReason.NORMALIZATION_FAILED, correlation_id, [str(e)]
            )

        normalized = NormalizedEvent(
            envelope=event, request=request, correlation_id=correlation_id
        )
        outcome = await execute_with_retry(
            lambda: handler.handle(normalized),
            self.retry_policy,
            label=f"handle {event.event_type}",
            sleep=self._sleep,
        )
        if outcome.success:
            logger.info(
                "Processed %s in %s attempt(s)",
                event.event_type,
                outcome.attempts,
                extra={"trace_id": correlation_id},
            )
            return _Verdict(outcome="processed", correlation_id=correlation_id)

        if isinstance(outcome.error, NormalizationError):
            reason = DeadLetterReason.NORMALIZATION_FAILED
        elif isinstance(outcome.error, ValidationError):
            reason = DeadLetterReason.VALIDATION_FAILED
        else:
            reason = DeadLetterReason.RETRIES_EXHAUSTED
        return _Verdict.reject(
            raw, reason, correlation_id, [f"{type(outcome.error).__name__}: {outcome.error}"]
        )

    async def _ack(self, message: BrokerMessage, correlation_id: Optional[str]) -> None:
        try:
            await message.ack()
        except Exception:  # noqa: BLE001
            # The broker redelivers unacked messages; the outcome already happened
            logger.exception(
                "Failed to ack message %s",
                message.message_id,
                extra={"trace_id": correlation_id or ""},
            )

    async def _reject(self, message: BrokerMessage, verdict: "_Verdict") -> str:
        """Dead-letter then ack; if the DLQ publish fails, requeue instead."""
        correlation_id = verdict.correlation_id
        try:
            await self.dead_letters.emit(
                verdict.raw, verdict.reason, correlation_id=correlation_id, errors=verdict.errors
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to dead-letter message %s; requeueing",
                message.message_id,
                extra={"trace_id": correlation_id or ""},
            )
            try:
                await message.nack(requeue=True)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to requeue message %s", message.message_id)
            messages_consumed_total.labels(outcome="requeued").inc()
            return "requeued"
        await self._ack(message, correlation_id)
        messages_consumed_total.labels(outcome="dead_lettered").inc()
        return "dead_lettered"


@dataclass
class _Verdict:
    """What the pipeline decided for one message. ``reason`` set means dead-letter."""

    outcome: str
    correlation_id: Optional[str] = None
    raw: Any = None
    reason: Optional[DeadLetterReason] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def reject(
        cls,
        raw: Any,
        reason: DeadLetterReason,
        correlation_id: Optional[str],
        errors: List[str],
    ) -> "_Verdict":
        return cls(
            outcome="dead_lettered",
            correlation_id=correlation_id,
            raw=raw,
            reason=reason,
            errors=list(errors),
        )
