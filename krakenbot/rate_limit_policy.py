"""Rate-limit policy: minimum spacing between any two requests to the exchange."""
import asyncio
import time
from typing import Callable, Optional


class RateLimiter:
    """Enforce a minimum interval between consecutive requests.

    One instance is shared by public and private traffic. ``wait()`` holds an
    asyncio lock while sleeping, so concurrent callers are spaced one after
    another instead of all waking at the same instant.
    """

    def __init__(self, min_interval: float = 1.0, clock: Optional[Callable[[], float]] = None):
        self.min_interval = min_interval
        self.clock = clock or time.monotonic
        self._last_request: Optional[float] = None
        self._lock: Optional[asyncio.Lock] = None

    def time_until_allowed(self) -> float:
        """Return seconds until the next request is allowed. 0 if allowed now."""
        if self._last_request is None:
            return 0.0
        elapsed = self.clock() - self._last_request
        return max(0.0, self.min_interval - elapsed)

    def is_allowed(self) -> bool:
        return self.time_until_allowed() == 0.0

    def record_request(self) -> None:
        self._last_request = self.clock()

    async def wait(self) -> None:
        """Sleep until a request is allowed, then record it."""
        if self._lock is None:
            # created lazily so the limiter can be built outside a running loop
            self._lock = asyncio.Lock()
        async with self._lock:
            delay = self.time_until_allowed()
            if delay > 0:
                await asyncio.sleep(delay)
            self.record_request()
