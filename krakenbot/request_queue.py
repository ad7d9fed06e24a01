"""
Serialized pipeline for authenticated requests.

Every private call goes through one FIFO drained by a single worker task:

- at most one authenticated request is in flight
- requests are dispatched in submission order
- the nonce is drawn at dispatch time, so nonce order equals dispatch order
- rate-limit answers are retried at the head of the line after a cooldown
- transient failures are retried a bounded number of times
- a task that exhausts its retries fails only its own caller

The worker exits when the FIFO is empty and is restarted by the next
``enqueue()``.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from .errors import ConnectivityError, RateLimitExceeded
from .logging_setup import logger
from .nonce import NonceManager
from .rate_limit_policy import RateLimiter
from .signing import SignedRequest

RequestBuilder = Callable[[int], SignedRequest]
Sender = Callable[[SignedRequest], Awaitable[Any]]


@dataclass
class _QueuedTask:
    build: RequestBuilder
    future: asyncio.Future


class PrivateRequestQueue:
    """FIFO of private requests with a single lazily-started worker.

    Args:
        nonces: Source of strictly increasing nonces
        send: Coroutine performing one HTTP round-trip for a signed request;
            raises ``RateLimitExceeded`` / ``ConnectivityError`` for retryable
            failures and any other exception for permanent ones
        limiter: Rate limiter shared with public traffic
        max_retries: Retries after a ``ConnectivityError``
        retry_delay: Seconds between connectivity retries
        rate_limit_cooldown: Seconds to wait after a rate-limit answer
        max_rate_limit_retries: Resubmissions allowed after rate-limit answers
    """

    def __init__(
        self,
        nonces: NonceManager,
        send: Sender,
        limiter: Optional[RateLimiter] = None,
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        rate_limit_cooldown: float = 3.0,
        max_rate_limit_retries: int = 10,
    ):
        self.nonces = nonces
        self.send = send
        self.limiter = limiter or RateLimiter()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.rate_limit_cooldown = rate_limit_cooldown
        self.max_rate_limit_retries = max_rate_limit_retries
        self._pending: Deque[_QueuedTask] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._idle: Optional[asyncio.Event] = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def idle(self) -> bool:
        return self._worker is None

    def enqueue(self, build: RequestBuilder) -> "asyncio.Future[Any]":
        """Append a request to the FIFO; the future resolves with its response.

        Must be called from within the running event loop.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending.append(_QueuedTask(build=build, future=future))
        if self._worker is None:
            self._idle_event().clear()
            self._worker = loop.create_task(self._drain())
        return future

    async def submit(self, build: RequestBuilder) -> Any:
        return await self.enqueue(build)

    async def join(self) -> None:
        """Wait until the FIFO has been drained."""
        if self._worker is not None:
            await self._idle_event().wait()

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
        return self._idle

    async def _drain(self) -> None:
        try:
            while self._pending:
                task = self._pending.popleft()
                if task.future.done():
                    # caller gave up before dispatch
                    continue
                try:
                    result = await self._dispatch(task.build)
                except asyncio.CancelledError:
                    task.future.cancel()
                    while self._pending:
                        self._pending.popleft().future.cancel()
                    raise
                except Exception as e:
                    if not task.future.done():
                        task.future.set_exception(e)
                else:
                    if not task.future.done():
                        task.future.set_result(result)
        finally:
            self._worker = None
            self._idle_event().set()

    async def _dispatch(self, build: RequestBuilder) -> Any:
        failures = 0
        rate_limited = 0
        while True:
            request = build(self.nonces.next())
            await self.limiter.wait()
            try:
                return await self.send(request)
            except RateLimitExceeded:
                rate_limited += 1
                if rate_limited > self.max_rate_limit_retries:
                    logger.error(f"Rate limit retries exhausted | endpoint={request.endpoint} attempts={rate_limited}")
                    raise
                logger.warning(f"Rate limit exceeded, cooling down | endpoint={request.endpoint} cooldown={self.rate_limit_cooldown}s")
                await asyncio.sleep(self.rate_limit_cooldown)
            except ConnectivityError as e:
                failures += 1
                if failures > self.max_retries:
                    logger.error(f"Request failed after retries | endpoint={request.endpoint} attempts={failures} error={e}")
                    raise
                logger.warning(f"Transient failure, retrying | endpoint={request.endpoint} attempt={failures} error={e}")
                await asyncio.sleep(self.retry_delay)
