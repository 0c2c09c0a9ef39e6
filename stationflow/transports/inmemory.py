"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple, Type

from pydantic import ValidationError

from ..contracts import WireMessage
from .base import BaseTransport, MessageT

logger = logging.getLogger(__name__)


class InMemoryTransport(BaseTransport[str]):
    """Simple in-process queue for unit tests.

    Delayed messages wait in a heap and move to their topic once due, which
    mimics a broker dead-lettering expired messages.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._delayed: List[Tuple[float, int, str, str]] = []
        self._counter = itertools.count()
        self._lock = asyncio.Lock()
        self.published: List[Tuple[str, str]] = []

    async def publish(self, topic: str, message: WireMessage) -> None:
        """Publish message to in-memory queue."""
        body = message.to_json()
        async with self._lock:
            self._queues[topic].append(body)
            self.published.append((topic, body))

    async def publish_delayed(
        self, topic: str, message: WireMessage, delay_ms: int
    ) -> None:
        due = time.monotonic() + max(0, delay_ms) / 1000
        async with self._lock:
            heapq.heappush(
                self._delayed, (due, next(self._counter), topic, message.to_json())
            )

    def _promote_due(self) -> None:
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, topic, body = heapq.heappop(self._delayed)
            self._queues[topic].append(body)

    def get_nowait(self, topic: str) -> Optional[str]:
        """Pop the next raw body for ``topic`` or return None."""
        self._promote_due()
        queue = self._queues[topic]
        return queue.popleft() if queue else None

    def has_scheduled(self) -> bool:
        """Return ``True`` while delayed messages are still waiting."""
        return bool(self._delayed)

    def pending(self, topic: str) -> int:
        self._promote_due()
        return len(self._queues[topic])

    async def subscribe(
        self,
        topic: str,
        message_type: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[str, MessageT]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            message_type: Wire model used to parse message bodies
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                body = self.get_nowait(topic)
            if body is not None:
                try:
                    message = message_type.from_json(body)
                except ValidationError as e:
                    logger.error(f"Dropping unparseable message on {topic}: {e}")
                    continue
                yield body, message
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
