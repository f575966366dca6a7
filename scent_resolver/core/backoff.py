"""
Retry with capped exponential backoff.

Retries upstream rate limiting; sleeps are awaited so they end with the calling task.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..errors import RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before retry ``n`` is ``min(base_delay ** n, max_delay)`` seconds."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 8.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_delay ** attempt, self.max_delay)


async def retry_rate_limited(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """Run ``operation``, retrying while it raises ``RateLimited``.

    A ``retry_after`` hint from the provider is honoured but never beyond
    ``policy.max_delay``. Cancelling the calling task interrupts the sleep.

    Args:
        operation: Zero-argument coroutine factory performing one attempt
        policy: Attempt count and delay bounds
        sleep: Awaitable sleep function

    Returns:
        The first successful result

    Raises:
        RateLimited: If every attempt was rate limited
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except RateLimited as exc:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            if exc.retry_after is not None:
                delay = min(max(delay, exc.retry_after), policy.max_delay)
            logger.warning(
                "%s rate limited (attempt %d/%d); retrying in %.1fs",
                exc.provider, attempt, policy.max_attempts, delay,
            )
            await sleep(delay)
            attempt += 1
