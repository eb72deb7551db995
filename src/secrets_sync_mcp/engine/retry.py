"""Bounded exponential backoff for platform calls.

Retries transport failures, 5xx responses, 429 responses and secondary rate
limits. Every other error, including 4xx responses, is raised immediately.

Delay for attempt ``n`` (0-based) is
``min(base_delay * multiplier**n, max_delay) + uniform(0, jitter)``, except
after a secondary rate limit, where the platform's Retry-After is used.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from .exceptions import RemoteApiError, SecondaryRateLimit

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=1.0, ge=0.0, le=60.0)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_delay: float = Field(default=32.0, ge=0.0)
    jitter: float = Field(default=1.0, ge=0.0, description="Upper bound of random extra delay")
    secondary_rate_limit_delay: float = Field(
        default=60.0,
        ge=0.0,
        description="Wait after a secondary rate limit without Retry-After",
    )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, SecondaryRateLimit):
        return True
    if isinstance(error, RemoteApiError):
        return error.retryable
    return False


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently or attempts run out.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt count and delay schedule
        description: Short label used in log messages (never a secret value)

    Returns:
        Result of the first successful attempt

    Raises:
        The last error once attempts are exhausted, or the first non-retryable one
    """
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except (SecondaryRateLimit, RemoteApiError) as e:
            if not is_retryable(e) or attempt == policy.max_attempts - 1:
                raise

            if isinstance(e, SecondaryRateLimit):
                delay = e.retry_after
                if delay is None:
                    delay = policy.secondary_rate_limit_delay
            else:
                delay = policy.delay_for(attempt)

            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    # Loop always returns or raises; max_attempts >= 1
    raise RuntimeError(f"{description} failed after all retry attempts")


__all__ = ["RetryPolicy", "is_retryable", "run_with_retry"]
