import asyncio

import pytest

from notification_gateway.audit.service import AuditService
from notification_gateway.errors import (
    WebhookConflictError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from notification_gateway.storage.documents import InMemoryDocumentStore
from notification_gateway.webhooks.models import CreateWebhook, UpdateWebhook, WebhookFilter
from notification_gateway.webhooks.service import WebhookRegistry


def run(coro):
    return asyncio.run(coro)


def _create(name="crm-sync", url="https://hooks.example.com/n", events=None, **kw):
    return CreateWebhook(
        name=name,
        url=url,
        events=events or ["notification.sent", "notification.failed"],
        **kw,
    )


def test_create_and_get_with_defaults():
    async def scenario():
        registry = WebhookRegistry(InMemoryDocumentStore())
        created = await registry.create(_create(), created_by="billing")
        return created, await registry.get(created.id)

    created, fetched = run(scenario())
    assert fetched == created
    assert fetched.is_active is True
    assert fetched.timeout == 30000
    assert fetched.retry_count == 3
    assert fetched.retry_delay == 1000
    assert fetched.created_by == "billing"


def test_name_conflict_then_reuse_after_delete():
    async def scenario():
        registry = WebhookRegistry(InMemoryDocumentStore())
        original = await registry.create(_create(), created_by="a")
        with pytest.raises(WebhookConflictError):
            await registry.create(_create(), created_by="b")
        await registry.delete(original.id)
        return await registry.create(_create(), created_by="b")

    reused = run(scenario())
    assert reused.name == "crm-sync"


def test_inactive_names_do_not_conflict_until_activation():
    async def scenario():
        registry = WebhookRegistry(InMemoryDocumentStore())
        first = await registry.create(_create(), created_by="a")
        await registry.deactivate(first.id)
        second = await registry.create(_create(), created_by="b")
        with pytest.raises(WebhookConflictError):
            await registry.activate(first.id)
        return second

    assert run(scenario()).is_active is True


def test_rename_checks_uniqueness():
    async def scenario():
        registry = WebhookRegistry(InMemoryDocumentStore())
        await registry.create(_create(name="one"), created_by="a")
        two = await registry.create(_create(name="two"), created_by="a")
        with pytest.raises(WebhookConflictError):
            await registry.update(two.id, UpdateWebhook(name="one"))
        # updating other fields with the same name is fine
        return await registry.update(two.id, UpdateWebhook(name="two", retry_count=5))

    updated = run(scenario())
    assert updated.retry_count == 5
    assert updated.updated_at >= updated.created_at


def test_null_only_clears_nullable_fields():
    async def scenario():
        registry = WebhookRegistry(InMemoryDocumentStore())
        hook = await registry.create(
            _create(headers={"X-Tenant": "t1"}, secret="s"), created_by="a"
        )
        with pytest.raises(WebhookValidationError):
            await registry.update(hook.id, UpdateWebhook(name=None))
        bulk = await registry.bulk_update([hook.id], UpdateWebhook(is_active=None))
        cleared = await registry.update(hook.id, UpdateWebhook(headers=None, secret=None))
        return bulk, cleared

    bulk, cleared = run(scenario())
    assert bulk["failed"] == 1
    assert cleared.name == "crm-sync"
    assert cleared.headers is None
    assert cleared.secret is None


@pytest.mark.parametrize(
    "url", ["not a url", "ftp://files.example.com/x", "https://", "/relative/path"]
)
def test_invalid_urls_rejected(url):
    registry = WebhookRegistry(InMemoryDocumentStore())
    with pytest.raises(WebhookValidationError):
        run(registry.create(_create(url=url), created_by="a"))


def test_event_set_validation():
    registry = WebhookRegistry(InMemoryDocumentStore())
    with pytest.raises(WebhookValidationError):
        run(registry.create(_create(events=["notification.exploded"]), created_by="a"))
    with pytest.raises(WebhookValidationError):
        run(registry.create(CreateWebhook(name="x", url="http://h", events=[]), created_by="a"))


def test_missing_webhook_raises_not_found():
    registry = WebhookRegistry(InMemoryDocumentStore())
    with pytest.raises(WebhookNotFoundError):
        run(registry.get("nope"))
    with pytest.raises(WebhookNotFoundError):
        run(registry.delete("nope"))


def test_find_filters_sort_and_pagination():
    async def scenario():
        registry = WebhookRegistry(InMemoryDocumentStore())
        await registry.create(_create(name="alpha", events=["user.created"]), created_by="u")
        await registry.create(_create(name="bravo"), created_by="u")
        charlie = await registry.create(_create(name="charlie"), created_by="x")
        await registry.deactivate(charlie.id)
        by_event = await registry.find(WebhookFilter(event="notification.sent"), sort="name", order="asc")
        active = await registry.find(WebhookFilter(is_active=True), sort="name", order="desc")
        page = await registry.find(sort="name", order="asc", limit=1, offset=1)
        search = await registry.search("RAV")
        targets = await registry.by_event_type("notification.sent")
        mine = await registry.by_creator("u")
        return by_event, active, page, search, targets, mine

    by_event, active, page, search, targets, mine = run(scenario())
    assert [w.name for w in by_event["items"]] == ["bravo", "charlie"]
    assert [w.name for w in active["items"]] == ["bravo", "alpha"]
    assert page["total"] == 3
    assert [w.name for w in page["items"]] == ["bravo"]
    assert [w.name for w in search] == ["bravo"]
    # inactive webhooks are excluded from delivery targets but stay queryable
    assert [w.name for w in targets] == ["bravo"]
    assert sorted(w.name for w in mine) == ["alpha", "bravo"]


def test_find_rejects_unknown_sort_field():
    registry = WebhookRegistry(InMemoryDocumentStore())
    with pytest.raises(WebhookValidationError):
        run(registry.find(sort="secret"))


def test_statistics_and_bulk_operations():
    async def scenario():
        registry = WebhookRegistry(InMemoryDocumentStore())
        a = await registry.create(_create(name="a"), created_by="u")
        b = await registry.create(_create(name="b", events=["user.deleted"]), created_by="u")
        bulk = await registry.bulk_update([a.id, b.id, "missing"], UpdateWebhook(is_active=False))
        stats = await registry.statistics()
        deleted = await registry.bulk_delete([a.id, "missing"])
        return bulk, stats, deleted, await registry.statistics()

    bulk, stats, deleted, after = run(scenario())
    assert bulk["success"] == 2
    assert bulk["failed"] == 1
    assert bulk["errors"][0]["id"] == "missing"
    assert stats["total"] == 2
    assert stats["active"] == 0
    assert stats["inactive"] == 2
    assert stats["by_event_type"]["notification.sent"] == 1
    assert stats["by_event_type"]["user.deleted"] == 1
    assert deleted["success"] == 1
    assert after["total"] == 1


def test_mutations_are_audited_with_secrets_redacted():
    async def scenario():
        audit = AuditService()
        registry = WebhookRegistry(InMemoryDocumentStore(), audit_service=audit)
        hook = await registry.create(_create(secret="s3cr3t"), created_by="svc")
        await registry.update(hook.id, UpdateWebhook(secret="rotated"))
        await registry.delete(hook.id)
        return await audit.list_events()

    events = run(scenario())
    actions = [e["action"] for e in events["items"]]
    assert actions == ["deleted", "updated", "created"]
    assert all(e["actor"] in ("svc", None) for e in events["items"])
    assert "s3cr3t" not in str(events)
    assert "rotated" not in str(events)
