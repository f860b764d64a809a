"""Redis transport for cross-process job queues."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..contracts import JobMessage
from ..errors import QueueUnavailableError
from .base import BaseTransport

logger = logging.getLogger(__name__)

# Scores combine priority and enqueue time so BZPOPMIN serves lower
# priority numbers first and FIFO within a priority.
_PRIORITY_WEIGHT = 10**13


def job_score(priority: int, enqueued_ms: Optional[int] = None) -> int:
    enqueued_ms = int(time.time() * 1000) if enqueued_ms is None else enqueued_ms
    return priority * _PRIORITY_WEIGHT + enqueued_ms


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis sorted-set transport for distributed workers."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except (RedisError, OSError) as exc:
            self._redis = None
            raise QueueUnavailableError(f"Redis at {self.host}:{self.port} unavailable: {exc}") from exc

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def is_available(self) -> bool:
        try:
            if not self._redis:
                await self.connect()
            return bool(await self._redis.ping())
        except (QueueUnavailableError, RedisError, OSError):
            return False

    @staticmethod
    def _queue_name(topic: str) -> str:
        return f"stepwise:{topic}"

    async def publish(self, topic: str, message: JobMessage) -> None:
        """Add the job to a sorted set scored by priority then time."""
        if not self._redis:
            await self.connect()
        try:
            await self._redis.zadd(
                self._queue_name(topic), {message.to_json(): job_score(message.priority)}
            )
        except (RedisError, OSError) as exc:
            raise QueueUnavailableError(f"Failed to publish job {message.job_id}: {exc}") from exc

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], JobMessage]]:
        """Consume jobs from the Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.bzpopmin(queue_name, timeout=1)
            if not result:
                continue

            _, message_json, _ = result
            try:
                message = JobMessage.from_json(message_json)
            except ValueError as e:
                logger.error(f"Failed to parse job message: {e}")
                continue
            yield (queue_name, message_json), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if not requeue:
            return
        queue_name, message_json = raw_message
        message = JobMessage.from_json(message_json)
        await self._redis.zadd(queue_name, {message_json: job_score(message.priority)})
