"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple, Type

from pydantic import ValidationError

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import WireMessage, now_ms
from .base import BaseTransport, MessageT

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport for distributed messaging.

    Queues are Redis lists. Delayed messages sit in a sorted set scored by
    their due time and are moved onto the destination list by whichever
    subscriber claims them first with ``ZREM``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "stationflow",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def _delayed_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:delayed"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: WireMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def publish_delayed(
        self, topic: str, message: WireMessage, delay_ms: int
    ) -> None:
        if not self._redis:
            await self.connect()
        due = now_ms() + max(0, delay_ms)
        await self._redis.zadd(self._delayed_name(topic), {message.to_json(): due})

    async def _promote_due(self, topic: str) -> None:
        delayed = self._delayed_name(topic)
        due = await self._redis.zrangebyscore(delayed, "-inf", now_ms())
        for body in due:
            # only the subscriber that removes the entry forwards it
            if await self._redis.zrem(delayed, body):
                await self._redis.lpush(self._queue_name(topic), body)

    async def subscribe(
        self,
        topic: str,
        message_type: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[str, MessageT]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            await self._promote_due(topic)
            result = await self._redis.brpop(queue_name, timeout=1)

            if result:
                _, body = result
                try:
                    message = message_type.from_json(body)
                except ValidationError as e:
                    logger.error(f"Dropping unparseable message on {topic}: {e}")
                    continue
                yield body, message

            # Brief sleep to prevent busy waiting when no messages
            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass
