from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempt count with capped exponential backoff between attempts."""

    max_attempts: int
    base_delay_ms: int = 10
    max_delay_ms: int = 1000

    def delay_s(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""

        if self.base_delay_ms <= 0:
            return 0.0
        delay_ms = min(self.max_delay_ms, self.base_delay_ms * (2 ** max(attempt - 1, 0)))
        return delay_ms / 1000.0

    async def backoff(self, attempt: int) -> None:
        # sleep(0) still yields so that racing writers get to run
        await asyncio.sleep(self.delay_s(attempt))


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    what: str,
) -> T:
    """Run ``operation``, retrying only on :class:`StoreUnavailable`.

    Logical errors raised by the operation propagate on the first attempt.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except StoreUnavailable as exc:
            if attempt >= policy.max_attempts:
                logger.warning("%s failed after %d attempts: %s", what, attempt, exc)
                raise
            logger.debug("%s attempt %d hit transient store error: %s", what, attempt, exc)
            await policy.backoff(attempt)
