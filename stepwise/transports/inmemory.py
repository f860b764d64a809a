"""In-memory transport for testing and single-process deployments."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..contracts import JobMessage
from ..errors import QueueUnavailableError
from .base import BaseTransport

_Raw = Tuple[str, JobMessage]


class InMemoryTransport(BaseTransport[_Raw]):
    """In-process priority queue.

    Setting ``available`` to False simulates a broker outage: publishing
    then raises ``QueueUnavailableError``.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, List[Tuple[int, int, JobMessage]]] = defaultdict(list)
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.available = True
        self.acked: List[str] = []
        self.nacked: List[str] = []

    async def is_available(self) -> bool:
        return self.available

    async def _push(self, topic: str, message: JobMessage) -> None:
        async with self._lock:
            heapq.heappush(self._queues[topic], (message.priority, next(self._seq), message))

    async def publish(self, topic: str, message: JobMessage) -> None:
        """Publish message to in-memory queue."""
        if not self.available:
            raise QueueUnavailableError("In-memory queue is disabled")
        await self._push(topic, message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[_Raw, JobMessage]]:
        """Consume jobs from ``topic`` in priority order.

        Args:
            topic: The queue to consume from
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            message = None
            async with self._lock:
                if self._queues[topic]:
                    _, _, message = heapq.heappop(self._queues[topic])
            if message is not None:
                yield (topic, message), message
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: _Raw) -> None:
        self.acked.append(raw_message[1].job_id)

    async def nack(self, raw_message: _Raw, requeue: bool = True) -> None:
        topic, message = raw_message
        self.nacked.append(message.job_id)
        if requeue:
            await self._push(topic, message)
