"""
Notification dispatch gateway.

Consumes domain events from a message broker, normalizes them into canonical
notification requests, orders them through a priority dispatch queue and
reports delivery outcomes to registered webhooks.
"""

__version__ = "1.0.0"
