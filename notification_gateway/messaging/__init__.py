"""
Inbound event pipeline.

This package provides:
- Broker adapters (in-memory, Redis Streams)
- Envelope validation and normalization
- The shared retry executor
- Dead-letter routing
- The message consumer and its handler registry
"""

from .broker import BrokerClient, BrokerMessage, InMemoryBroker, RedisStreamsBroker
from .consumer import EventHandler, HandlerRegistry, MessageConsumer
from .dead_letters import DeadLetterSink
from .models import DeadLetterReason, DeadLetterRecord, EventEnvelope, NormalizedEvent
from .normalizer import EventNormalizer
from .retry import RetryPolicy, RetryResult, execute_with_retry
from .validation import EventValidator, ValidationResult

__all__ = [
    "BrokerClient",
    "BrokerMessage",
    "InMemoryBroker",
    "RedisStreamsBroker",
    "EventHandler",
    "HandlerRegistry",
    "MessageConsumer",
    "DeadLetterSink",
    "DeadLetterReason",
    "DeadLetterRecord",
    "EventEnvelope",
    "NormalizedEvent",
    "EventNormalizer",
    "RetryPolicy",
    "RetryResult",
    "execute_with_retry",
    "EventValidator",
    "ValidationResult",
]
