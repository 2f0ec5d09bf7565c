"""
Retry Policy - Bounded backoff for rate-limited adapter calls.

Only RateLimitedError is retried. Every other adapter error
propagates on the first occurrence so the cycle can be skipped.
After the last attempt the RateLimitedError is re-raised and the
caller skips the wallet for this cycle.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from chain_adapters.exceptions import RateLimitedError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Backoff schedule for rate-limited calls.

    delay(attempt) = min(base_delay * multiplier ** attempt, max_delay),
    plus up to `jitter` fraction of random extra delay. A provider
    retry_after hint replaces the computed delay when it is larger.
    """
    max_attempts: int = 3
    base_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.multiplier < 1 or self.jitter < 0:
            raise ValueError("Invalid backoff parameters")

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return delay

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        description: str = "adapter call",
    ) -> T:
        """
        Await fn(), retrying on RateLimitedError.

        Raises:
            RateLimitedError: When every attempt was rate limited
        """
        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except RateLimitedError as e:
                if attempt + 1 >= self.max_attempts:
                    logger.warning(
                        f"Rate limit retries exhausted for {description} "
                        f"after {self.max_attempts} attempts"
                    )
                    raise
                wait_time = self.compute_delay(attempt, e.retry_after_seconds)
                logger.warning(
                    f"Rate limited on {description}, retry "
                    f"{attempt + 1}/{self.max_attempts - 1} in {wait_time:.1f}s"
                )
                await self.sleep(wait_time)

        # range(max_attempts) always returns or raises
        raise AssertionError("unreachable")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "multiplier": self.multiplier,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
        }
