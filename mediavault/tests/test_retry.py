"""
Retry policy tests.

Run with: pytest mediavault/tests/test_retry.py -v
"""

import asyncio

import pytest

from mediavault.reliability.retry import RetryPolicy, calculate_backoff, retry_with_backoff

FAST = RetryPolicy(max_retries=3, base_delay_ms=1, max_delay_ms=2,
                   retryable_exceptions=(ConnectionError,), non_retryable_exceptions=(KeyError,))


class Flaky:
    """Fails `failures` times with `error`, then returns "ok"."""

    def __init__(self, failures: int, error: BaseException) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    flaky = Flaky(2, ConnectionError("reset"))
    result = await retry_with_backoff(flaky, FAST, operation="test")
    assert result.unwrap() == "ok"
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    flaky = Flaky(10, ConnectionError("reset"))
    result = await retry_with_backoff(flaky, FAST)
    assert result.is_err()
    assert result.error.attempts == 4
    assert result.error.retryable
    assert isinstance(result.error.last_error, ConnectionError)
    assert flaky.calls == 4


@pytest.mark.asyncio
async def test_non_retryable_stops_immediately():
    flaky = Flaky(10, KeyError("gone"))
    result = await retry_with_backoff(flaky, FAST)
    assert result.is_err()
    assert not result.error.retryable
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_unlisted_exceptions_propagate():
    flaky = Flaky(1, ValueError("bug"))
    with pytest.raises(ValueError):
        await retry_with_backoff(flaky, FAST)


@pytest.mark.asyncio
async def test_cancellation_is_never_retried():
    flaky = Flaky(1, asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await retry_with_backoff(flaky, RetryPolicy(base_delay_ms=1, retryable_exceptions=(BaseException,)))
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_no_retry_policy():
    flaky = Flaky(1, Exception("once"))
    result = await retry_with_backoff(flaky, RetryPolicy.no_retry())
    assert result.is_err()
    assert flaky.calls == 1


def test_backoff_bounds():
    for attempt in range(6):
        delay = calculate_backoff(attempt, 100, 1000, 2.0, jitter=True)
        assert 0 <= delay <= min(1000, 100 * 2 ** attempt)
    assert calculate_backoff(2, 100, 10_000, 2.0, jitter=False) == 400
    assert calculate_backoff(10, 100, 1000, 2.0, jitter=False) == 1000
