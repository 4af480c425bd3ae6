"""Token bucket rate limiter for queue workers."""
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class TokenBucket:
    """Allows `max_tokens` acquisitions per `period` seconds.

    The bucket starts full and refills continuously. `acquire()` waits until
    a token is available; waiting is cancellable.

    Args:
        max_tokens: Bucket capacity (burst size)
        period: Seconds to refill the whole bucket
    """

    def __init__(self, max_tokens: int, period: float, clock=time.monotonic, sleep=asyncio.sleep):
        if max_tokens <= 0 or period <= 0:
            raise ValueError("max_tokens and period must be positive")
        self.max_tokens = max_tokens
        self.period = period
        self._rate = max_tokens / period
        self._tokens = float(max_tokens)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.max_tokens, self._tokens + (now - self._updated) * self._rate)
        self._updated = now

    def try_acquire(self) -> bool:
        """Take a token without waiting."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        async with self._lock:
            while not self.try_acquire():
                wait = (1 - self._tokens) / self._rate
                logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
                await self._sleep(wait)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens
