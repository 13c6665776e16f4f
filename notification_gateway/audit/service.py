"""
Audit trail for dead letters and webhook registry mutations.

Events are emitted as compact JSON log lines and kept in a bounded
in-memory buffer for listing. Secrets and credentials in ``details`` are
redacted before either happens.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import json
import logging


class AuditCategory(str, Enum):
    SYSTEM = "system"
    PIPELINE = "pipeline"
    WEBHOOKS = "webhooks"


logger = logging.getLogger(__name__)

_EVENT_BUFFER_LIMIT = 1000


class AuditService:
    SENSITIVE_KEYS = {
        "secret",
        "token",
        "password",
        "authorization",
        "api_key",
        "apikey",
        "x-api-key",
        "cookie",
    }

    def __init__(self, buffer_limit: int = _EVENT_BUFFER_LIMIT):
        self._buffer: List[Dict[str, Any]] = []
        self._limit = buffer_limit

    @classmethod
    def _sanitize(cls, data: Any) -> Any:
        """Recursively redact credential-like values."""
        if isinstance(data, dict):
            out: Dict[str, Any] = {}
            for k, v in data.items():
                key_l = str(k).lower()
                if key_l in cls.SENSITIVE_KEYS or any(
                    t in key_l for t in ("secret", "token", "authorization", "password")
                ):
                    out[k] = "[REDACTED]" if v is not None else None
                else:
                    out[k] = cls._sanitize(v)
            return out
        if isinstance(data, list):
            return [cls._sanitize(x) for x in data[:50]]  # cap length
        if isinstance(data, (str, int, float, bool)) or data is None:
            return data
        if isinstance(data, bytes):
            return "[REDACTED]"
        return str(data)

    async def log_event(
        self,
        event_type: str,
        category: Any,
        action: str,
        result: str,
        description: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        category_str = category.value if isinstance(category, AuditCategory) else str(category)
        payload = {
            "type": event_type,
            "category": category_str,
            "action": action,
            "result": result,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "actor": actor,
            "correlation_id": correlation_id,
            "description": description,
            "details": self._sanitize(details or {}),
            "ts": datetime.now(tz=timezone.utc).isoformat(),
        }
        logger.info(
            "audit_event=%s",
            json.dumps(payload, separators=(",", ":"), default=str),
            extra={"trace_id": correlation_id or ""},
        )
        self._buffer.append(payload)
        if len(self._buffer) > self._limit:
            del self._buffer[: len(self._buffer) - self._limit]
        return payload

    async def list_events(self, limit: int = 100, offset: int = 0) -> dict:
        items = list(self._buffer)
        items.reverse()
        slice_ = items[offset : offset + limit]
        return {
            "items": slice_,
            "total": len(self._buffer),
            "limit": limit,
            "offset": offset,
        }
