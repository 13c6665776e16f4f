"""
Bounded retry with pluggable backoff for async operations.

One executor serves both the message pipeline and webhook delivery; the
call sites differ only in the RetryPolicy they pass.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from ..errors import ConfigurationError, NormalizationError, ValidationError
from ..monitoring.metrics import retry_attempts_total

logger = logging.getLogger(__name__)

DelayFn = Callable[[int], float]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class RetryPolicy:
    """How many attempts, how long between them, and which errors stop early.

    ``delay`` maps the 1-based number of the attempt that just failed to the
    seconds to wait before the next one.
    """

    max_attempts: int = 3
    delay: DelayFn = field(default=lambda attempt: 1.0)
    attempt_timeout: Optional[float] = None
    skip_on: Tuple[Type[BaseException], ...] = (ConfigurationError,)
    give_up_on: Tuple[Type[BaseException], ...] = (ValidationError, NormalizationError)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def fixed(
        cls,
        max_attempts: int = 3,
        delay_seconds: float = 1.0,
        attempt_timeout: Optional[float] = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            delay=lambda attempt: delay_seconds,
            attempt_timeout=attempt_timeout,
        )

    @classmethod
    def exponential(
        cls,
        max_attempts: int = 3,
        base_seconds: float = 1.0,
        factor: float = 2.0,
        max_delay: float = 30.0,
        attempt_timeout: Optional[float] = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            delay=lambda attempt: min(max_delay, base_seconds * (factor ** (attempt - 1))),
            attempt_timeout=attempt_timeout,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        delay = settings.retry_delay_ms / 1000.0
        if settings.retry_backoff == "exponential":
            return cls.exponential(settings.retry_max_attempts, base_seconds=delay)
        return cls.fixed(settings.retry_max_attempts, delay_seconds=delay)


@dataclass
class RetryResult:
    success: bool
    attempts: int
    error: Optional[BaseException] = None
    result: Any = None


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    label: str = "operation",
    sleep: SleepFn = asyncio.sleep,
    on_attempt: Optional[Callable[[int, Optional[BaseException]], Awaitable[None]]] = None,
) -> RetryResult:
    """Run ``operation`` until it succeeds or the policy budget is spent.

    Never raises for operation failures. ``on_attempt`` is awaited after every
    attempt with the attempt number and the error (None on success).
    """
    policy = policy or RetryPolicy()
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        retry_attempts_total.labels(operation=label).inc()
        try:
            if policy.attempt_timeout is not None:
                result = await asyncio.wait_for(operation(), timeout=policy.attempt_timeout)
            else:
                result = await operation()
        except policy.skip_on as e:
            logger.warning("%s skipped: %s", label, e)
            if on_attempt is not None:
                await on_attempt(attempt, None)
            return RetryResult(success=True, attempts=attempt)
        except policy.give_up_on as e:
            logger.error("%s failed with terminal error: %s", label, e)
            if on_attempt is not None:
                await on_attempt(attempt, e)
            return RetryResult(success=False, attempts=attempt, error=e)
        except asyncio.TimeoutError:
            last_error = asyncio.TimeoutError(
                f"{label} timed out after {policy.attempt_timeout}s"
            )
        except Exception as e:  # noqa: BLE001
            last_error = e
        else:
            if on_attempt is not None:
                await on_attempt(attempt, None)
            if attempt > 1:
                logger.info("%s succeeded on attempt %s", label, attempt)
            return RetryResult(success=True, attempts=attempt, result=result)

        if on_attempt is not None:
            await on_attempt(attempt, last_error)
        if attempt < policy.max_attempts:
            wait = max(0.0, policy.delay(attempt))
            logger.warning(
                "%s attempt %s/%s failed: %s; retrying in %.2fs",
                label,
                attempt,
                policy.max_attempts,
                last_error,
                wait,
            )
            await sleep(wait)

    logger.error("%s failed after %s attempts: %s", label, policy.max_attempts, last_error)
    return RetryResult(success=False, attempts=policy.max_attempts, error=last_error)
