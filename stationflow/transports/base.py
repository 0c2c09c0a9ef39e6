"""Base transport interface for stationflow messaging."""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator, Generic, Optional, Tuple, Type, TypeVar

from ..contracts import WireMessage
from ..errors import TransientBrokerError
from ..utils.retry import schedule_retry

logger = logging.getLogger(__name__)

RawMessageT = TypeVar("RawMessageT")
MessageT = TypeVar("MessageT", bound=WireMessage)


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    A transport owns its broker connection. Use it as an async context
    manager so the connection is released on shutdown::

        async with RabbitMQTransport(url) as transport:
            await transport.publish("activity-execution", message)
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: WireMessage) -> None:
        """Send a message to a topic/queue.

        Partitioned transports route by ``message.partition_key``.
        """
        raise NotImplementedError

    async def publish_delayed(
        self, topic: str, message: WireMessage, delay_ms: int
    ) -> None:
        """Deliver ``message`` to ``topic`` once ``delay_ms`` has elapsed.

        The delay must be owned by the broker so that it survives restarts.
        """
        raise NotImplementedError(
            f"{type(self).__name__} does not support delayed delivery"
        )

    @abc.abstractmethod
    def subscribe(
        self,
        topic: str,
        message_type: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawMessageT, MessageT]]:
        """Yield raw transport message and parsed message pairs.

        Bodies that cannot be parsed as ``message_type`` are rejected without
        requeue and never yielded.

        Args:
            topic: The topic to subscribe to
            message_type: Wire model used to parse message bodies
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)


async def publish_with_retry(
    transport: BaseTransport,
    topic: str,
    message: WireMessage,
    attempts: int = 3,
    delay_ms: Optional[int] = None,
) -> None:
    """Publish with exponential backoff; raise TransientBrokerError when exhausted."""

    for attempt in range(1, attempts + 1):
        try:
            if delay_ms is None:
                await transport.publish(topic, message)
            else:
                await transport.publish_delayed(topic, message, delay_ms)
            return
        except NotImplementedError:
            raise
        except Exception as e:
            if attempt == attempts:
                raise TransientBrokerError(
                    f"Publishing to {topic} failed after {attempts} attempts: {e}"
                ) from e
            logger.warning(
                f"Publish to {topic} failed (attempt {attempt}/{attempts}): {e}"
            )
            await schedule_retry(attempt)
