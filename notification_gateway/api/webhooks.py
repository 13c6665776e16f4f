from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, status

from ..errors import (
    WebhookConflictError,
    WebhookError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from ..webhooks.dispatcher import WebhookDispatcher
from ..webhooks.models import CreateWebhook, UpdateWebhook, WebhookFilter
from ..webhooks.service import WebhookRegistry
from .models import BulkDeleteRequest, BulkUpdateRequest


webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_registry: Optional[WebhookRegistry] = None
_dispatcher: Optional[WebhookDispatcher] = None


def configure_webhooks_api(*, registry: WebhookRegistry, dispatcher: WebhookDispatcher) -> None:
    global _registry, _dispatcher
    _registry = registry
    _dispatcher = dispatcher


def _resolve_registry() -> WebhookRegistry:
    if _registry is None:
        raise HTTPException(status_code=503, detail="Webhook registry unavailable")
    return _registry


def _resolve_dispatcher() -> WebhookDispatcher:
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Webhook dispatcher unavailable")
    return _dispatcher


def _http_error(e: WebhookError) -> HTTPException:
    if isinstance(e, WebhookNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, WebhookConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, WebhookValidationError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@webhooks_router.post("", status_code=status.HTTP_201_CREATED)
async def create_webhook(
    body: CreateWebhook,
    x_service_name: Optional[str] = Header(None),
):
    registry = _resolve_registry()
    try:
        webhook = await registry.create(body, created_by=x_service_name or "system")
    except WebhookError as e:
        raise _http_error(e)
    return webhook.public()


@webhooks_router.get("")
async def list_webhooks(
    name: Optional[str] = None,
    event: Optional[str] = None,
    is_active: Optional[bool] = None,
    created_by: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "created_at",
    order: str = "desc",
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    registry = _resolve_registry()
    filters = WebhookFilter(
        name=name, event=event, is_active=is_active, created_by=created_by, search=search
    )
    try:
        page = await registry.find(filters, sort=sort, order=order, limit=limit, offset=offset)
    except WebhookError as e:
        raise _http_error(e)
    return dict(page, items=[w.public() for w in page["items"]])


@webhooks_router.get("/stats")
async def webhook_stats() -> Dict[str, Any]:
    return await _resolve_registry().statistics()


@webhooks_router.get("/event/{event_type}")
async def webhooks_for_event(event_type: str):
    webhooks = await _resolve_registry().by_event_type(event_type)
    return {"items": [w.public() for w in webhooks]}


@webhooks_router.post("/bulk/update")
async def bulk_update(body: BulkUpdateRequest, x_service_name: Optional[str] = Header(None)):
    return await _resolve_registry().bulk_update(body.ids, body.update, x_service_name)


@webhooks_router.post("/bulk/delete")
async def bulk_delete(body: BulkDeleteRequest, x_service_name: Optional[str] = Header(None)):
    return await _resolve_registry().bulk_delete(body.ids, x_service_name)


@webhooks_router.get("/{webhook_id}")
async def get_webhook(webhook_id: str):
    try:
        webhook = await _resolve_registry().get(webhook_id)
    except WebhookError as e:
        raise _http_error(e)
    return webhook.public()


@webhooks_router.patch("/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    body: UpdateWebhook,
    x_service_name: Optional[str] = Header(None),
):
    try:
        webhook = await _resolve_registry().update(webhook_id, body, x_service_name)
    except WebhookError as e:
        raise _http_error(e)
    return webhook.public()


@webhooks_router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(webhook_id: str, x_service_name: Optional[str] = Header(None)):
    try:
        await _resolve_registry().delete(webhook_id, x_service_name)
    except WebhookError as e:
        raise _http_error(e)


@webhooks_router.post("/{webhook_id}/activate")
async def activate_webhook(webhook_id: str, x_service_name: Optional[str] = Header(None)):
    try:
        webhook = await _resolve_registry().activate(webhook_id, x_service_name)
    except WebhookError as e:
        raise _http_error(e)
    return webhook.public()


@webhooks_router.post("/{webhook_id}/deactivate")
async def deactivate_webhook(webhook_id: str, x_service_name: Optional[str] = Header(None)):
    try:
        webhook = await _resolve_registry().deactivate(webhook_id, x_service_name)
    except WebhookError as e:
        raise _http_error(e)
    return webhook.public()


@webhooks_router.get("/{webhook_id}/deliveries")
async def list_deliveries(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    try:
        page = await _resolve_dispatcher().get_deliveries(webhook_id, limit=limit, offset=offset)
    except WebhookError as e:
        raise _http_error(e)
    return dict(page, items=[d.model_dump(mode="json") for d in page["items"]])


@webhooks_router.post("/{webhook_id}/test")
async def test_webhook(webhook_id: str):
    try:
        attempt = await _resolve_dispatcher().send_test(webhook_id)
    except WebhookError as e:
        raise _http_error(e)
    return attempt.model_dump(mode="json")
