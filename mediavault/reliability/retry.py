"""
Retries for idempotent backend calls (multipart parts, presign-free reads).

Delay before attempt n+1 is drawn uniformly from [0, min(cap, base * factor^n)]
("full jitter"), so parts of one upload that fail together do not retry
in lockstep. Each attempt is bounded by `request_timeout_s`; the whole loop
by `global_timeout_s`.

Cancellation is re-raised at once and never counted as an attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Type, TypeVar

from mediavault.core import constants as C
from mediavault.core.types import Err, Ok, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = 10_000
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()
    request_timeout_s: float = 30.0
    global_timeout_s: float = 120.0

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt, for calls that must not be repeated."""
        return cls(max_retries=0)

    def delay_ms(self, attempt: int) -> float:
        return calculate_backoff(
            attempt, self.base_delay_ms, self.max_delay_ms, self.exponential_base, self.jitter,
        )


@dataclass(frozen=True)
class RetryExhausted:
    """Attempts made and the last failure seen."""

    attempts: int
    last_error: BaseException
    retryable: bool = True

    def __str__(self) -> str:
        return f"gave up after {self.attempts} attempt(s): {self.last_error}"


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    operation: str = "call",
) -> Result[T, RetryExhausted]:
    """
    Await `func()` until it returns, retrying listed failures.

    Returns Ok(value), or Err(RetryExhausted) once retries, the global
    deadline or a non-retryable exception end the loop. Exceptions in
    neither list propagate unchanged.
    """
    policy = policy or RetryPolicy.default()
    deadline = time.monotonic() + policy.global_timeout_s
    last_error: BaseException = asyncio.TimeoutError(f"{operation}: retry deadline exceeded")
    attempts = 0

    while attempts <= policy.max_retries and time.monotonic() < deadline:
        attempts += 1
        try:
            return Ok(await asyncio.wait_for(func(), timeout=policy.request_timeout_s))
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            last_error = exc
            logger.debug("%s attempt %d timed out", operation, attempts)
        except policy.non_retryable_exceptions as exc:
            return Err(RetryExhausted(attempts=attempts, last_error=exc, retryable=False))
        except policy.retryable_exceptions as exc:
            last_error = exc
            logger.debug("%s attempt %d failed: %s", operation, attempts, exc)

        if attempts <= policy.max_retries:
            pause = policy.delay_ms(attempts - 1)
            logger.debug("Retrying %s in %.0fms", operation, pause)
            await asyncio.sleep(pause / 1000)

    return Err(RetryExhausted(attempts=attempts, last_error=last_error))


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
) -> float:
    """Milliseconds to wait after failed attempt number `attempt` (0-based)."""
    ceiling = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))
    return random.uniform(0, ceiling) if jitter else ceiling
