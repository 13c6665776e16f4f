"""
HTTP operations surface for the gateway.

Provides:
- Webhook registry management and delivery history
- Queue status and dead-letter listing
- The delivery-provider outcome callback
"""

from .operations import configure_operations_api, operations_router
from .webhooks import configure_webhooks_api, webhooks_router

__all__ = [
    "configure_operations_api",
    "operations_router",
    "configure_webhooks_api",
    "webhooks_router",
]
