"""Retry of whole billing operations after a lost update.

A concurrency conflict means another writer changed the account between our
read and our write.  The operation is re-run from scratch (fresh read, fresh
funds check) a bounded number of times before the conflict is surfaced.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for conflict retries."""

    max_retries: int = Field(
        default=1,
        ge=0,
        description="Re-runs allowed after the first attempt before re-raising.",
    )
    base_delay: float = Field(
        default=0.05,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=1.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...],
) -> T:
    """Await ``fn()`` and re-run it on a retryable exception.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory.  It is invoked from scratch on each
        attempt and must therefore be safe to repeat.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Only these exception types trigger a retry; anything else propagates
        immediately.

    Raises
    ------
    Exception
        The last retryable exception once all attempts are exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = _compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.2fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
