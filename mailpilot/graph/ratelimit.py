"""
Client-side throttle for mailbox API calls.

Microsoft Graph throttles per app and per mailbox, and a throttled request
simply fails. The adapter therefore limits itself: at most `max_requests`
calls admitted in any rolling `window_seconds`, and at most `max_concurrent`
calls in flight. Callers wait their turn in FIFO order; nothing is rejected.

Usage:
    limiter = RateLimiter(max_requests=30, window_seconds=60, max_concurrent=4)
    async with limiter.slot():
        resp = await http.get(...)
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window plus concurrency limiter with FIFO admission.

    Admission is serialized through an asyncio.Lock (whose waiters are
    woken in arrival order). The caller holding the lock re-checks the
    window after every wait, then takes a concurrency slot, then records
    its admission timestamp. Only after that does the next caller start.
    """

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        max_concurrent: int = 4,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1 or max_concurrent < 1:
            raise ValueError("max_requests and max_concurrent must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._max_requests = max_requests
        self._window = window_seconds
        self._max_concurrent = max_concurrent
        self._clock = clock
        self._sleep = sleep

        self._admitted: deque[float] = deque()
        self._admission = asyncio.Lock()
        self._in_flight = asyncio.Semaphore(max_concurrent)
        self._waiting = 0

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def waiting(self) -> int:
        """Callers currently queued for admission."""
        return self._waiting

    def calls_in_window(self) -> int:
        self._evict(self._clock())
        return len(self._admitted)

    def _evict(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self._window:
            self._admitted.popleft()

    async def acquire(self) -> None:
        """Block until this caller may issue one request."""
        self._waiting += 1
        try:
            async with self._admission:
                while True:
                    now = self._clock()
                    self._evict(now)
                    if len(self._admitted) < self._max_requests:
                        break
                    wait = self._window - (now - self._admitted[0])
                    logger.debug(
                        "ratelimit.window_full",
                        extra={
                            "action": "ratelimit.window_full",
                            "wait_seconds": round(wait, 3),
                            "queued": self._waiting,
                        },
                    )
                    await self._sleep(max(wait, 0.0))

                await self._in_flight.acquire()
                self._admitted.append(self._clock())
        finally:
            self._waiting -= 1

    def release(self) -> None:
        self._in_flight.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
