"""
Error taxonomy shared by the consumption pipeline and the webhook subsystem.
"""

from __future__ import annotations

from typing import List, Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ValidationError(GatewayError):
    """Malformed or deprecated event envelope. Terminal, never retried."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [message])


class NormalizationError(GatewayError):
    """A field required to build the canonical request is missing or invalid."""


class TransientDeliveryError(GatewayError):
    """A broker, store or provider call failed; eligible for retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(GatewayError):
    """Missing wiring such as an unregistered handler. Logged, not dead-lettered."""


class UnexpectedError(GatewayError):
    """Wraps anything uncaught at the consumer boundary."""

    def __init__(self, cause: BaseException):
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.cause = cause


class WebhookError(GatewayError):
    """Base class for webhook registry errors."""


class WebhookValidationError(WebhookError):
    pass


class WebhookNotFoundError(WebhookError):
    pass


class WebhookConflictError(WebhookError):
    pass
