"""
Environment-driven gateway settings.

Env variables:
  - LOG_LEVEL: default INFO
  - EVENT_BUS_BACKEND: memory (default) | redis_streams
  - REDIS_URL: used by the redis_streams backend
  - NOTIFICATION_EXCHANGE: default 'notifications'
  - NOTIFICATION_QUEUE: queue consumed for inbound events, default 'notifications.events'
  - DLQ_ROUTING_KEY: default 'dlq.notification'
  - CONSUMER_PREFETCH: max unacknowledged in-flight messages, default 10
  - RETRY_MAX_ATTEMPTS / RETRY_DELAY_MS / RETRY_BACKOFF (fixed|exponential)
  - STORE_BACKEND: memory (default) | sql
  - DATABASE_URL: SQLAlchemy async URL for the sql store
  - QUEUE_BATCH_SIZE / QUEUE_POLL_INTERVAL / QUEUE_MAX_ATTEMPTS
  - QUEUE_LEASE_SECONDS: processing items older than this are reclaimed, default 300
  - DELIVERY_PROVIDER_URL: outbound provider endpoint; unset means dry-run
  - DELIVERY_TIMEOUT: seconds, default 30
  - NOTIFICATION_EVENT_TYPES: comma-separated event types handled at startup
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from ..errors import ConfigurationError

# Event types routed to the notification handler unless overridden
DEFAULT_EVENT_TYPES: Tuple[str, ...] = (
    "loaphuong.contentPublished",
    "loaphuong.AnnouncementCreated",
)


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must be >= 0, got {value}")
    return value


def _env_choice(env: Mapping[str, str], name: str, default: str, choices: set) -> str:
    value = (env.get(name) or default).strip().lower()
    if value not in choices:
        raise ConfigurationError(
            f"{name} must be one of {sorted(choices)}, got {value!r}"
        )
    return value


def _env_list(env: Mapping[str, str], name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = env.get(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class GatewaySettings:
    log_level: str = "INFO"
    event_bus_backend: str = "memory"
    redis_url: str = "redis://127.0.0.1:6379/0"
    exchange: str = "notifications"
    queue_name: str = "notifications.events"
    dlq_routing_key: str = "dlq.notification"
    consumer_prefetch: int = 10
    retry_max_attempts: int = 3
    retry_delay_ms: int = 1000
    retry_backoff: str = "fixed"
    store_backend: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./notification_gateway.db"
    queue_batch_size: int = 10
    queue_poll_interval: float = 1.0
    queue_max_attempts: int = 3
    queue_lease_seconds: float = 300.0
    delivery_provider_url: Optional[str] = None
    delivery_timeout: float = 30.0
    event_types: Tuple[str, ...] = DEFAULT_EVENT_TYPES

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        env = os.environ if env is None else env
        return cls(
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            event_bus_backend=_env_choice(
                env, "EVENT_BUS_BACKEND", "memory", {"memory", "redis_streams"}
            ),
            redis_url=env.get("REDIS_URL") or cls.redis_url,
            exchange=env.get("NOTIFICATION_EXCHANGE") or cls.exchange,
            queue_name=env.get("NOTIFICATION_QUEUE") or cls.queue_name,
            dlq_routing_key=env.get("DLQ_ROUTING_KEY") or cls.dlq_routing_key,
            consumer_prefetch=_env_int(env, "CONSUMER_PREFETCH", 10, minimum=1),
            retry_max_attempts=_env_int(env, "RETRY_MAX_ATTEMPTS", 3, minimum=1),
            retry_delay_ms=_env_int(env, "RETRY_DELAY_MS", 1000),
            retry_backoff=_env_choice(
                env, "RETRY_BACKOFF", "fixed", {"fixed", "exponential"}
            ),
            store_backend=_env_choice(env, "STORE_BACKEND", "memory", {"memory", "sql"}),
            database_url=env.get("DATABASE_URL") or cls.database_url,
            queue_batch_size=_env_int(env, "QUEUE_BATCH_SIZE", 10, minimum=1),
            queue_poll_interval=_env_float(env, "QUEUE_POLL_INTERVAL", 1.0),
            queue_max_attempts=_env_int(env, "QUEUE_MAX_ATTEMPTS", 3, minimum=1),
            queue_lease_seconds=_env_float(env, "QUEUE_LEASE_SECONDS", 300.0),
            delivery_provider_url=env.get("DELIVERY_PROVIDER_URL") or None,
            delivery_timeout=_env_float(env, "DELIVERY_TIMEOUT", 30.0),
            event_types=_env_list(env, "NOTIFICATION_EVENT_TYPES", DEFAULT_EVENT_TYPES),
        )
