"""Token-bucket request limiter shared by embedding calls across videos."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TokenBucket:
    """Token bucket state.

    Attributes:
        tokens: Tokens currently available.
        max_tokens: Bucket capacity (burst size).
        refill_rate: Tokens added per second.
        last_update: Monotonic timestamp of the last refill.
    """

    tokens: float
    max_tokens: float
    refill_rate: float
    last_update: float = field(default_factory=time.monotonic)

    def refill(self, now: float) -> None:
        elapsed = max(now - self.last_update, 0.0)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_update = now


class RequestRateLimiter:
    """Async limiter enforcing a requests-per-minute ceiling.

    One instance is meant to be shared by every embedding service in the
    process, so batches from different videos interleave against the same
    budget. With the default burst of 1, consecutive requests are spaced
    ``60 / requests_per_minute`` seconds apart. A non-positive rate disables
    limiting.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._bucket = (
            TokenBucket(
                tokens=float(burst),
                max_tokens=float(burst),
                refill_rate=requests_per_minute / 60,
                last_update=clock(),
            )
            if requests_per_minute > 0
            else None
        )

    @property
    def enabled(self) -> bool:
        return self._bucket is not None

    async def acquire(self, cost: float = 1.0) -> float:
        """Wait until ``cost`` requests may be sent, then consume them.

        Returns:
            Seconds spent waiting.
        """
        if self._bucket is None:
            return 0.0

        waited = 0.0
        while True:
            async with self._lock:
                now = self._clock()
                self._bucket.refill(now)
                if self._bucket.tokens >= cost:
                    self._bucket.tokens -= cost
                    if waited:
                        logger.debug(
                            "rate_limit_wait_completed",
                            waited_seconds=round(waited, 3),
                            requests_per_minute=self.requests_per_minute,
                        )
                    return waited
                wait = (cost - self._bucket.tokens) / self._bucket.refill_rate

            await self._sleep(wait)
            waited += wait
