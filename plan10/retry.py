"""Retry policy applied to connection attempts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from .errors import RemoteConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff over errors whose ``retryable`` flag is set.

    ``max_attempts`` counts the first try, so 1 disables retries. The delay
    before attempt ``n + 1`` is ``base_delay * factor ** (n - 1)`` capped at
    ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], describe: str = "operation") -> T:
        """
        Call ``operation`` until it succeeds or a permanent error occurs.

        Raises:
            RemoteConnectionError: The last error, once attempts are exhausted
                or immediately when it is not retryable
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except RemoteConnectionError as e:
                if not e.retryable:
                    raise
                if attempt >= self.max_attempts:
                    logger.warning("%s failed after %d attempt(s): %s", describe, attempt, e)
                    raise
                wait = self.delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    describe, attempt, self.max_attempts, e, wait,
                )
                await self.sleep(wait)
                attempt += 1
