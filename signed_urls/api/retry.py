# Bounded exponential backoff, shared by S3 signing (rate limits) and Redis reconnects.

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Tuple, Type

from signed_urls.api.errors import RateLimited

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts counts the first try, so max_attempts=1 means no retries.
    delay(attempt) = min(max_delay, base_delay * multiplier ** (attempt - 1)).
    """

    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0
    multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (RateLimited,)
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await fn(*args, **kwargs), retrying only ``retry_on`` errors. The last error propagates."""
        attempt = 1
        while True:
            try:
                return await fn(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                wait = self.delay(attempt)
                log.info("retrying %s after %s (attempt %d/%d, wait %.2fs)",
                         getattr(fn, "__name__", fn), type(e).__name__, attempt, self.max_attempts, wait)
                await self.sleep(wait)
                attempt += 1
