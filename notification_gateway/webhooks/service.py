"""
Webhook registry: CRUD and lookup for webhook subscriptions.

Rules enforced on every write:
- url parses as http(s) with a host
- events is a non-empty subset of WebhookEventType
- no two active webhooks share a name (checked at create, rename, activate)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import ValidationError as PydanticValidationError

from ..audit.service import AuditCategory, AuditService
from ..errors import (
    WebhookConflictError,
    WebhookError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from ..storage.documents import DocumentStore
from .models import CreateWebhook, UpdateWebhook, Webhook, WebhookEventType, WebhookFilter

logger = logging.getLogger(__name__)

WEBHOOK_COLLECTION = "webhooks"

# Fields a PATCH may clear by sending null
NULLABLE_FIELDS = frozenset({"headers", "secret"})

SORTABLE_FIELDS = {"name", "url", "created_at", "updated_at", "is_active"}

_EVENT_TYPES = {e.value for e in WebhookEventType}


def validate_url(url: str) -> str:
    parsed = urlparse((url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise WebhookValidationError(f"Invalid webhook URL: {url!r}")
    return url.strip()


def validate_events(events: List[str]) -> List[str]:
    if not events:
        raise WebhookValidationError("At least one event type is required")
    unknown = [e for e in events if e not in _EVENT_TYPES]
    if unknown:
        raise WebhookValidationError(f"Unknown event types: {', '.join(unknown)}")
    # de-duplicate, keep order
    return list(dict.fromkeys(events))


class WebhookRegistry:
    def __init__(
        self,
        store: DocumentStore,
        audit_service: Optional[AuditService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit_service = audit_service
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        # Serializes the name check with the write that depends on it
        self._lock = asyncio.Lock()

    async def _audit(self, action: str, webhook: Webhook, actor: Optional[str], **details: Any) -> None:
        if self.audit_service is None:
            return
        await self.audit_service.log_event(
            event_type="webhook_registry",
            category=AuditCategory.WEBHOOKS,
            action=action,
            result="success",
            description=f"Webhook {webhook.name} {action}",
            resource_type="webhook",
            resource_id=webhook.id,
            actor=actor,
            details=details or None,
        )

    async def _ensure_name_free(self, name: str, exclude_id: Optional[str] = None) -> None:
        docs = await self.store.find(WEBHOOK_COLLECTION, {"name": name, "is_active": True})
        if any(d["id"] != exclude_id for d in docs):
            raise WebhookConflictError(f"Webhook with name '{name}' already exists")

    async def _save(self, webhook: Webhook) -> Webhook:
        await self.store.upsert(WEBHOOK_COLLECTION, webhook.model_dump(mode="json"))
        return webhook

    async def create(self, data: CreateWebhook, created_by: str) -> Webhook:
        url = validate_url(data.url)
        events = validate_events(data.events)
        async with self._lock:
            if data.is_active:
                await self._ensure_name_free(data.name)
            now = self._clock()
            webhook = Webhook(
                name=data.name,
                url=url,
                events=events,
                headers=data.headers,
                secret=data.secret,
                is_active=data.is_active,
                timeout=data.timeout,
                retry_count=data.retry_count,
                retry_delay=data.retry_delay,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            await self.store.insert(WEBHOOK_COLLECTION, webhook.model_dump(mode="json"))
        logger.info("Webhook created: %s (%s)", webhook.name, webhook.id)
        await self._audit("created", webhook, created_by, url=webhook.url, events=events)
        return webhook

    async def get(self, webhook_id: str) -> Webhook:
        doc = await self.store.get(WEBHOOK_COLLECTION, webhook_id)
        if doc is None:
            raise WebhookNotFoundError(f"Webhook with ID {webhook_id} not found")
        return Webhook.model_validate(doc)

    async def update(
        self, webhook_id: str, data: UpdateWebhook, updated_by: Optional[str] = None
    ) -> Webhook:
        changes = data.model_dump(exclude_unset=True)
        nulls = sorted(k for k, v in changes.items() if v is None and k not in NULLABLE_FIELDS)
        if nulls:
            raise WebhookValidationError(f"{', '.join(nulls)} cannot be null")
        if "url" in changes:
            changes["url"] = validate_url(changes["url"])
        if "events" in changes:
            changes["events"] = validate_events(changes["events"] or [])
        async with self._lock:
            current = await self.get(webhook_id)
            name = changes.get("name", current.name)
            active = changes.get("is_active", current.is_active)
            renamed = name != current.name
            activated = active and not current.is_active
            if active and (renamed or activated):
                await self._ensure_name_free(name, exclude_id=webhook_id)
            changes["updated_at"] = self._clock()
            updated = current.model_copy(update=changes)
            # model_copy skips validation; round-trip to coerce enums
            try:
                updated = Webhook.model_validate(updated.model_dump())
            except PydanticValidationError as e:
                raise WebhookValidationError(str(e)) from e
            await self._save(updated)
        logger.info("Webhook updated: %s", webhook_id)
        await self._audit(
            "updated", updated, updated_by, fields=sorted(k for k in changes if k != "updated_at")
        )
        return updated

    async def delete(self, webhook_id: str, deleted_by: Optional[str] = None) -> None:
        webhook = await self.get(webhook_id)
        await self.store.delete(WEBHOOK_COLLECTION, webhook_id)
        logger.info("Webhook deleted: %s", webhook_id)
        await self._audit("deleted", webhook, deleted_by)

    async def activate(self, webhook_id: str, actor: Optional[str] = None) -> Webhook:
        return await self.update(webhook_id, UpdateWebhook(is_active=True), actor)

    async def deactivate(self, webhook_id: str, actor: Optional[str] = None) -> Webhook:
        return await self.update(webhook_id, UpdateWebhook(is_active=False), actor)

    async def find(
        self,
        filters: Optional[WebhookFilter] = None,
        sort: str = "created_at",
        order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        if sort not in SORTABLE_FIELDS:
            raise WebhookValidationError(f"Cannot sort by {sort!r}")
        if order not in ("asc", "desc"):
            raise WebhookValidationError("order must be 'asc' or 'desc'")
        filters = filters or WebhookFilter()
        query: Dict[str, Any] = {}
        if filters.name is not None:
            query["name"] = filters.name
        if filters.event is not None:
            query["events"] = filters.event
        if filters.is_active is not None:
            query["is_active"] = filters.is_active
        if filters.created_by is not None:
            query["created_by"] = filters.created_by

        docs = await self.store.find(
            WEBHOOK_COLLECTION, query, sort=[(sort, 1 if order == "asc" else -1)]
        )
        if filters.search:
            needle = filters.search.lower()
            docs = [
                d for d in docs if needle in d["name"].lower() or needle in d["url"].lower()
            ]
        page = docs[offset : offset + limit]
        return {
            "items": [Webhook.model_validate(d) for d in page],
            "total": len(docs),
            "limit": limit,
            "offset": offset,
        }

    async def by_event_type(self, event_type: str, active_only: bool = True) -> List[Webhook]:
        query: Dict[str, Any] = {"events": event_type}
        if active_only:
            query["is_active"] = True
        docs = await self.store.find(WEBHOOK_COLLECTION, query, sort=[("created_at", 1)])
        return [Webhook.model_validate(d) for d in docs]

    async def by_creator(self, created_by: str) -> List[Webhook]:
        docs = await self.store.find(
            WEBHOOK_COLLECTION, {"created_by": created_by}, sort=[("created_at", -1)]
        )
        return [Webhook.model_validate(d) for d in docs]

    async def search(self, query: str, limit: int = 20) -> List[Webhook]:
        result = await self.find(WebhookFilter(search=query), limit=limit)
        return result["items"]

    async def statistics(self) -> Dict[str, Any]:
        docs = await self.store.find(WEBHOOK_COLLECTION)
        active = sum(1 for d in docs if d.get("is_active"))
        by_event = {e.value: 0 for e in WebhookEventType}
        for doc in docs:
            for event in doc.get("events") or []:
                by_event[event] = by_event.get(event, 0) + 1
        return {
            "total": len(docs),
            "active": active,
            "inactive": len(docs) - active,
            "by_event_type": by_event,
        }

    async def bulk_update(
        self, webhook_ids: List[str], data: UpdateWebhook, updated_by: Optional[str] = None
    ) -> Dict[str, Any]:
        success = 0
        errors: List[Dict[str, str]] = []
        for webhook_id in webhook_ids:
            try:
                await self.update(webhook_id, data, updated_by)
                success += 1
            except WebhookError as e:
                errors.append({"id": webhook_id, "error": str(e)})
        return {"success": success, "failed": len(errors), "errors": errors}

    async def bulk_delete(
        self, webhook_ids: List[str], deleted_by: Optional[str] = None
    ) -> Dict[str, Any]:
        success = 0
        errors: List[Dict[str, str]] = []
        for webhook_id in webhook_ids:
            try:
                await self.delete(webhook_id, deleted_by)
                success += 1
            except WebhookError as e:
                errors.append({"id": webhook_id, "error": str(e)})
        return {"success": success, "failed": len(errors), "errors": errors}
