import httpx
from fastapi.testclient import TestClient

from notification_gateway.config.settings import GatewaySettings
from notification_gateway.main import create_app
from notification_gateway.messaging.retry import RetryPolicy
from notification_gateway.runtime import GatewayRuntime


async def _no_sleep(_seconds):
    return None


ANNOUNCEMENT = {
    "eventType": "loaphuong.AnnouncementCreated",
    "payload": {
        "notification": {
            "title": "Water outage",
            "body": "Tomorrow 8-12",
            "type": "announcement",
            "priority": "high",
            "channels": ["push"],
        },
        "sourceService": "loaphuong",
        "contentId": "a-7",
        "sentBy": "u-1",
    },
    "correlationId": "corr-api-1",
}


class Subscriber:
    def __init__(self):
        self.events = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.events.append(request.headers["X-Webhook-Event"])
        return httpx.Response(200)


def _client(subscriber=None):
    subscriber = subscriber or Subscriber()
    runtime = GatewayRuntime(
        GatewaySettings(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(subscriber)),
        retry_policy=RetryPolicy.fixed(3, 0),
        sleep=_no_sleep,
        run_worker=False,
    )
    return TestClient(create_app(runtime)), runtime


def _webhook(name="crm", events=("notification.sent",), **kw):
    body = {"name": name, "url": "https://crm.example/hooks", "events": list(events)}
    body.update(kw)
    return body


def test_health_and_metrics():
    client, _ = _client()
    with client:
        health = client.get("/health")
        metrics = client.get("/metrics")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "healthy"
    assert body["consumer"]["consuming"] is True
    assert body["queue"]["total"] == 0
    assert metrics.status_code == 200
    assert "notification_gateway_messages_consumed_total" in metrics.text


def test_webhook_crud():
    client, _ = _client()
    with client:
        created = client.post(
            "/webhooks", json=_webhook(secret="shh"), headers={"X-Service-Name": "crm-svc"}
        )
        assert created.status_code == 201
        hook = created.json()
        assert hook["created_by"] == "crm-svc"
        assert hook["has_secret"] is True
        assert "secret" not in hook

        assert client.post("/webhooks", json=_webhook()).status_code == 409
        assert client.post("/webhooks", json=_webhook(name="x", url="ftp://nope")).status_code == 400
        assert client.post("/webhooks", json=_webhook(name="y", events=["bogus"])).status_code == 400
        assert client.post("/webhooks", json=_webhook(name="z", timeout=5)).status_code == 422

        assert client.get(f"/webhooks/{hook['id']}").json()["name"] == "crm"
        assert client.get("/webhooks/missing").status_code == 404

        patched = client.patch(f"/webhooks/{hook['id']}", json={"retry_count": 0})
        assert patched.status_code == 200
        assert patched.json()["retry_count"] == 0

        listing = client.get("/webhooks", params={"event": "notification.sent"}).json()
        assert listing["total"] == 1
        assert client.get("/webhooks/event/notification.sent").json()["items"][0]["id"] == hook["id"]
        assert client.get("/webhooks", params={"sort": "secret"}).status_code == 400

        assert client.post(f"/webhooks/{hook['id']}/deactivate").json()["is_active"] is False
        stats = client.get("/webhooks/stats").json()
        assert stats["inactive"] == 1
        assert client.post(f"/webhooks/{hook['id']}/activate").json()["is_active"] is True

        assert client.delete(f"/webhooks/{hook['id']}").status_code == 204
        assert client.delete(f"/webhooks/{hook['id']}").status_code == 404


def test_patch_with_null_fields():
    client, _ = _client()
    with client:
        hook = client.post("/webhooks", json=_webhook(secret="shh")).json()
        null_name = client.patch(f"/webhooks/{hook['id']}", json={"name": None})
        null_url = client.patch(f"/webhooks/{hook['id']}", json={"url": None, "timeout": None})
        cleared = client.patch(f"/webhooks/{hook['id']}", json={"secret": None})
        current = client.get(f"/webhooks/{hook['id']}").json()
    assert null_name.status_code == 400
    assert null_url.status_code == 400
    assert "timeout" in null_url.json()["detail"]
    assert cleared.status_code == 200
    assert cleared.json()["has_secret"] is False
    assert current["name"] == "crm"


def test_bulk_endpoints():
    client, _ = _client()
    with client:
        ids = [client.post("/webhooks", json=_webhook(name=n)).json()["id"] for n in ("a", "b")]
        updated = client.post(
            "/webhooks/bulk/update", json={"ids": ids + ["missing"], "update": {"is_active": False}}
        ).json()
        deleted = client.post("/webhooks/bulk/delete", json={"ids": ids}).json()
    assert updated["success"] == 2
    assert updated["failed"] == 1
    assert deleted["success"] == 2


def test_event_flows_to_queue_and_webhooks():
    subscriber = Subscriber()
    client, runtime = _client(subscriber)
    with client:
        hook = client.post(
            "/webhooks",
            json=_webhook(events=["notification.sent", "notification.delivered"]),
        ).json()

        client.portal.call(runtime.broker.publish, "notifications", "events", ANNOUNCEMENT)
        client.portal.call(runtime.broker.wait_idle)
        status = client.get("/queue/status").json()
        assert status["pending_by_priority"]["high"] == 1

        client.portal.call(runtime.queue.process_batch, runtime.provider)
        (item,) = client.portal.call(runtime.queue.find_by_correlation_id, "corr-api-1")
        assert item.delivery_id

        outcome = client.post(
            "/provider/outcomes", json={"delivery_id": item.delivery_id, "status": "delivered"}
        )
        unknown = client.post(
            "/provider/outcomes", json={"delivery_id": "nope", "status": "delivered"}
        )
        deliveries = client.get(f"/webhooks/{hook['id']}/deliveries").json()

    assert outcome.status_code == 202
    assert outcome.json()["deliveries"] == 1
    assert unknown.status_code == 404
    assert subscriber.events == ["notification.sent", "notification.delivered"]
    assert deliveries["total"] == 2


def test_dead_letters_and_audit_endpoints():
    client, runtime = _client()
    with client:
        client.portal.call(runtime.broker.publish, "notifications", "events", {"eventType": "x"})
        client.portal.call(runtime.broker.wait_idle)
        letters = client.get("/dead-letters", params={"reason": "validation failed"}).json()
        none = client.get("/dead-letters", params={"reason": "retries exhausted"}).json()
        audit = client.get("/audit/events").json()
    assert letters["total"] == 1
    assert letters["items"][0]["reason"] == "validation failed"
    assert none["total"] == 0
    assert any(e["category"] == "pipeline" for e in audit["items"])


def test_send_test_delivery():
    subscriber = Subscriber()
    client, _ = _client(subscriber)
    with client:
        hook = client.post("/webhooks", json=_webhook()).json()
        result = client.post(f"/webhooks/{hook['id']}/test")
        missing = client.post("/webhooks/missing/test")
    assert result.status_code == 200
    assert result.json()["status"] == "success"
    assert missing.status_code == 404
    assert subscriber.events == ["notification.sent"]
