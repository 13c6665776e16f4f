import asyncio

import pytest

from notification_gateway.config.settings import DEFAULT_EVENT_TYPES, GatewaySettings
from notification_gateway.errors import ConfigurationError
from notification_gateway.messaging.broker import (
    InMemoryBroker,
    RedisStreamsBroker,
    encode_message,
    queue_for,
    select_broker,
)


def run(coro):
    return asyncio.run(coro)


def test_routing_rule():
    assert queue_for("notifications", "events") == "notifications.events"
    assert queue_for("", "events") == "events"
    assert encode_message({"a": 1}) == b'{"a":1}'
    assert encode_message("x") == b"x"


def test_publish_reaches_consumer_and_ack_settles():
    async def scenario():
        broker = InMemoryBroker()
        await broker.start()
        seen = []

        async def handler(message):
            seen.append(message.body)
            await message.ack()
            # settling twice is a no-op
            await message.ack()

        await broker.consume("notifications.events", handler, consumer_tag="t1")
        await broker.publish("notifications", "events", {"n": 1})
        await broker.publish("notifications", "other", {"n": 2})
        await broker.wait_idle()
        unacked = broker.unacked("notifications.events")
        await broker.stop()
        return seen, unacked

    seen, unacked = run(scenario())
    assert seen == [b'{"n":1}']
    assert unacked == 0


def test_nack_with_requeue_redelivers():
    async def scenario():
        broker = InMemoryBroker()
        deliveries = []

        async def handler(message):
            deliveries.append(message.redelivered)
            if not message.redelivered:
                await message.nack(requeue=True)
            else:
                await message.ack()

        await broker.consume("q.k", handler, consumer_tag="t1")
        await broker.publish("q", "k", b"payload")
        await broker.wait_idle()
        await broker.stop()
        return deliveries

    assert run(scenario()) == [False, True]


def test_duplicate_consumer_tag_rejected():
    async def scenario():
        broker = InMemoryBroker()

        async def handler(message):
            await message.ack()

        await broker.consume("q.k", handler, consumer_tag="same")
        try:
            with pytest.raises(ValueError):
                await broker.consume("q.k", handler, consumer_tag="same")
        finally:
            await broker.stop()

    run(scenario())


def test_cancel_detaches_consumer():
    async def scenario():
        broker = InMemoryBroker()
        seen = []

        async def handler(message):
            seen.append(message.body)
            await message.ack()

        await broker.consume("q.k", handler, consumer_tag="t1")
        await broker.cancel("t1")
        # unknown tags are ignored
        await broker.cancel("t1")
        await broker.publish("q", "k", b"held")
        await asyncio.sleep(0.05)
        held = list(seen)

        # the tag is free again once cancelled
        await broker.consume("q.k", handler, consumer_tag="t1")
        await broker.wait_idle()
        await broker.stop()
        return held, seen

    held, seen = run(scenario())
    assert held == []
    assert seen == [b"held"]


def test_select_broker_by_backend():
    assert isinstance(select_broker(GatewaySettings()), InMemoryBroker)
    assert isinstance(
        select_broker(GatewaySettings(event_bus_backend="redis_streams")), RedisStreamsBroker
    )


def test_settings_from_env():
    settings = GatewaySettings.from_env(
        {
            "EVENT_BUS_BACKEND": "REDIS_STREAMS",
            "CONSUMER_PREFETCH": "4",
            "RETRY_BACKOFF": "exponential",
            "QUEUE_POLL_INTERVAL": "0.5",
            "QUEUE_LEASE_SECONDS": "45",
            "NOTIFICATION_EVENT_TYPES": "billing.InvoicePaid, loaphuong.AnnouncementCreated,",
        }
    )
    assert settings.event_bus_backend == "redis_streams"
    assert settings.consumer_prefetch == 4
    assert settings.retry_backoff == "exponential"
    assert settings.queue_poll_interval == 0.5
    assert settings.queue_lease_seconds == 45.0
    assert GatewaySettings.from_env({}).queue_lease_seconds == 300.0
    assert settings.event_types == ("billing.InvoicePaid", "loaphuong.AnnouncementCreated")
    assert GatewaySettings.from_env({}).event_types == DEFAULT_EVENT_TYPES


@pytest.mark.parametrize(
    "env",
    [
        {"CONSUMER_PREFETCH": "0"},
        {"CONSUMER_PREFETCH": "ten"},
        {"EVENT_BUS_BACKEND": "kafka"},
        {"QUEUE_POLL_INTERVAL": "-1"},
        {"STORE_BACKEND": "mongo"},
    ],
)
def test_invalid_settings_raise_configuration_error(env):
    with pytest.raises(ConfigurationError):
        GatewaySettings.from_env(env)
