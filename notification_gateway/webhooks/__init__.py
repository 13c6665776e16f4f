from .dispatcher import WebhookDispatcher
from .service import WebhookRegistry

__all__ = ["WebhookDispatcher", "WebhookRegistry"]
