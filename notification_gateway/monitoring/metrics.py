from prometheus_client import CollectorRegistry, Histogram, Gauge, Counter
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter
from fastapi.responses import Response

registry = CollectorRegistry()

messages_consumed_total = Counter(
    "notification_gateway_messages_consumed_total",
    "Broker messages handled by the consumer, by outcome",
    ["outcome"],
    registry=registry,
)

dead_letters_total = Counter(
    "notification_gateway_dead_letters_total",
    "Messages routed to the dead-letter queue",
    ["reason"],
    registry=registry,
)

retry_attempts_total = Counter(
    "notification_gateway_retry_attempts_total",
    "Attempts made by the retry executor",
    ["operation"],
    registry=registry,
)

queue_enqueued_total = Counter(
    "notification_gateway_queue_enqueued_total",
    "Notification requests enqueued, by priority tier",
    ["priority"],
    registry=registry,
)

queue_processed_total = Counter(
    "notification_gateway_queue_processed_total",
    "Queue items settled by the worker, by final status",
    ["status"],
    registry=registry,
)

queue_pending = Gauge(
    "notification_gateway_queue_pending",
    "Queue items currently pending",
    registry=registry,
)

webhook_deliveries_total = Counter(
    "notification_gateway_webhook_deliveries_total",
    "Webhook delivery attempts, by status",
    ["status"],
    registry=registry,
)

webhook_delivery_latency = Histogram(
    "notification_gateway_webhook_delivery_latency_seconds",
    "Latency of a single webhook delivery attempt",
    registry=registry,
)

metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def get_metrics():
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
