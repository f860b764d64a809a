"""Token reservoir rate limiter with a concurrency cap and FIFO queuing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class ReservoirLimiter:
    """Grant call slots from a refilling token reservoir.

    ``capacity`` tokens are available at start. Every ``refill_interval``
    seconds ``refill_amount`` tokens are added back, never exceeding
    ``capacity``. At most ``max_concurrent`` granted calls may be in flight.
    Requests that cannot be granted wait in submission order; nothing is ever
    rejected.
    """

    def __init__(
        self,
        capacity: int,
        refill_amount: int,
        refill_interval: float,
        max_concurrent: int,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1 or max_concurrent < 1:
            raise ValueError("capacity and max_concurrent must be at least 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")
        self.name = name
        self.capacity = capacity
        self.refill_amount = refill_amount
        self.refill_interval = refill_interval
        self.max_concurrent = max_concurrent
        self._clock = clock

        self._tokens = capacity
        self._in_flight = 0
        self._last_refill = clock()
        self._waiters: Deque[asyncio.Future] = deque()
        self._timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    @property
    def tokens(self) -> int:
        self._refill()
        return self._tokens

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def _refill(self) -> None:
        elapsed = self._clock() - self._last_refill
        intervals = int(elapsed // self.refill_interval)
        if intervals <= 0:
            return
        self._tokens = min(self.capacity, self._tokens + intervals * self.refill_amount)
        self._last_refill += intervals * self.refill_interval

    def _next_refill_in(self) -> float:
        return max(0.0, self._last_refill + self.refill_interval - self._clock())

    def _pump(self) -> None:
        """Grant slots to waiters at the head of the queue while possible."""
        self._refill()
        while self._waiters and self._in_flight < self.max_concurrent and self._tokens > 0:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._tokens -= 1
            self._in_flight += 1
            waiter.set_result(None)

        while self._waiters and self._waiters[0].done():
            self._waiters.popleft()

        if self._waiters and self._tokens <= 0 and self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self._next_refill_in(), self._on_refill_timer)

    def _on_refill_timer(self) -> None:
        self._timer = None
        self._pump()

    # ------------------------------------------------------------------
    async def acquire(self) -> None:
        """Wait until a token and a concurrency slot are granted."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters.append(waiter)
        self._pump()
        if not waiter.done():
            logger.debug(
                f"Rate limit reached for integration={self.name}; call queued "
                f"(tokens={self._tokens}, in_flight={self._in_flight}, queued={self.queued})"
            )
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was granted but the caller went away before using it.
                self.release()
            raise

    def release(self) -> None:
        """Return a concurrency slot. Consumed tokens are not returned."""
        if self._in_flight > 0:
            self._in_flight -= 1
        self._pump()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def get_status(self) -> Dict[str, float]:
        return {
            "tokens": self.tokens,
            "capacity": self.capacity,
            "in_flight": self._in_flight,
            "queued": self.queued,
            "next_refill_in": round(self._next_refill_in(), 3),
        }
