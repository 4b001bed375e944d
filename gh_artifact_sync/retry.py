"""Bounded exponential backoff for calls to the CI provider.

The delay computation is a pure function of the attempt number so it can be
tested without any transport, and `retry_async` only ever retries errors that
are marked as transient.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import TypeVar

from .exceptions import TransientError

_LOGGER = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "retry_async"]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to attempt a call and how long to wait in between."""

    max_attempts: int = 8
    base_delay: float = 5.0
    max_delay: float = 300.0
    factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must not be negative")

    def delay(self, attempt: int) -> float:
        """Return the delay to wait after the given (1-based) failed attempt."""
        if attempt < 1:
            raise ValueError(f"Attempt numbers start at 1, got {attempt}")
        return min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call `func` until it succeeds or the policy is exhausted.

    Only `TransientError` (including `RunNotFoundError`) is retried, any
    other exception propagates immediately. The last transient error is
    re-raised once `policy.max_attempts` calls have failed.
    """
    attempt = 1
    while True:
        try:
            return await func()
        except TransientError as err:
            if attempt >= policy.max_attempts:
                _LOGGER.warning("Giving up after %d attempts: %s", attempt, err)
                raise
            delay = policy.delay(attempt)
            _LOGGER.info(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt,
                policy.max_attempts,
                err,
                delay,
            )
            await sleep(delay)
            attempt += 1
