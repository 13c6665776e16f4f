import asyncio

from notification_gateway.errors import (
    ConfigurationError,
    NormalizationError,
    TransientDeliveryError,
    ValidationError,
)
from notification_gateway.messaging.retry import RetryPolicy, execute_with_retry


def run(coro):
    return asyncio.run(coro)


class _Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _flaky(failures, exc=TransientDeliveryError("boom")):
    state = {"calls": 0}

    async def op():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise exc
        return "ok"

    return op, state


def test_fails_twice_then_succeeds():
    op, state = _flaky(2)
    sleeps = _Sleeps()
    result = run(execute_with_retry(op, RetryPolicy.fixed(3, 0.5), sleep=sleeps))
    assert result.success is True
    assert result.attempts == 3
    assert result.result == "ok"
    assert state["calls"] == 3
    assert sleeps.calls == [0.5, 0.5]


def test_fails_every_attempt():
    op, state = _flaky(10)
    sleeps = _Sleeps()
    result = run(execute_with_retry(op, RetryPolicy.fixed(3, 0.1), sleep=sleeps))
    assert result.success is False
    assert result.attempts == 3
    assert isinstance(result.error, TransientDeliveryError)
    # no sleep after the last attempt
    assert len(sleeps.calls) == 2


def test_exponential_delays():
    op, _ = _flaky(3)
    sleeps = _Sleeps()
    policy = RetryPolicy.exponential(4, base_seconds=1.0, factor=2.0, max_delay=3.0)
    result = run(execute_with_retry(op, policy, sleep=sleeps))
    assert result.success is True
    assert sleeps.calls == [1.0, 2.0, 3.0]


def test_terminal_errors_stop_immediately():
    for exc in (ValidationError("bad"), NormalizationError("no sentBy")):
        op, state = _flaky(10, exc)
        result = run(execute_with_retry(op, RetryPolicy.fixed(3, 0), sleep=_Sleeps()))
        assert result.success is False
        assert result.attempts == 1
        assert result.error is exc
        assert state["calls"] == 1


def test_configuration_error_short_circuits_to_success():
    op, state = _flaky(10, ConfigurationError("no handler"))
    result = run(execute_with_retry(op, RetryPolicy.fixed(3, 0), sleep=_Sleeps()))
    assert result.success is True
    assert result.attempts == 1
    assert result.result is None


def test_attempt_timeout_counts_as_failure():
    calls = {"n": 0}

    async def slow():
        calls["n"] += 1
        if calls["n"] == 1:
            await asyncio.sleep(1.0)
        return "late"

    policy = RetryPolicy.fixed(2, 0, attempt_timeout=0.05)
    result = run(execute_with_retry(slow, policy, sleep=_Sleeps()))
    assert result.success is True
    assert result.attempts == 2


def test_on_attempt_sees_every_try():
    op, _ = _flaky(1)
    seen = []

    async def on_attempt(attempt, error):
        seen.append((attempt, type(error).__name__ if error else None))

    run(execute_with_retry(op, RetryPolicy.fixed(3, 0), sleep=_Sleeps(), on_attempt=on_attempt))
    assert seen == [(1, "TransientDeliveryError"), (2, None)]


def test_policy_from_settings():
    from notification_gateway.config.settings import GatewaySettings

    policy = RetryPolicy.from_settings(
        GatewaySettings(retry_max_attempts=5, retry_delay_ms=200, retry_backoff="exponential")
    )
    assert policy.max_attempts == 5
    assert policy.delay(1) == 0.2
    assert policy.delay(3) == 0.8
