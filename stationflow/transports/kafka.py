"""Kafka transport implementation using aiokafka."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Tuple, Type

from pydantic import ValidationError

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
    from aiokafka.structs import TopicPartition
except Exception:  # pragma: no cover - aiokafka not installed
    AIOKafkaConsumer = None  # type: ignore
    AIOKafkaProducer = None  # type: ignore
    TopicPartition = None  # type: ignore

from ..contracts import WireMessage
from .base import BaseTransport, MessageT

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport[Any]):
    """Kafka-based transport for distributed messaging.

    Messages are keyed by ``partition_key`` (the instance id for activations)
    so that all messages of one instance land on the same partition. Kafka
    has no per-message TTL, so delayed delivery is not supported.
    """

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        group_id: str = "activity-execution-group",
        dlq_topic: str = "activity-execution.deadletter",
    ) -> None:
        if AIOKafkaProducer is None or AIOKafkaConsumer is None:
            raise ImportError("aiokafka package is required for KafkaTransport")

        if isinstance(brokers, str):
            self.brokers = [b.strip() for b in brokers.split(",") if b.strip()]
        else:
            self.brokers = list(brokers)
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumer: Optional[AIOKafkaConsumer] = None

    async def connect(self) -> None:
        logger.info(f"Connecting to Kafka at {','.join(self.brokers)}")
        self._producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
        self._consumer = AIOKafkaConsumer(
            bootstrap_servers=self.brokers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await self._producer.start()
        await self._consumer.start()

    async def disconnect(self) -> None:
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, message: WireMessage) -> None:
        if not self._producer:
            raise RuntimeError("KafkaTransport not connected")
        key = message.partition_key.encode() if message.partition_key else None
        await self._producer.send_and_wait(
            topic, value=message.to_json().encode(), key=key
        )

    async def subscribe(
        self,
        topic: str,
        message_type: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[Any, MessageT]]:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        self._consumer.subscribe([topic])
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if asyncio.get_event_loop().time() - start_time >= lifespan:
                    break
            try:
                msg = await asyncio.wait_for(self._consumer.getone(), timeout=1)
            except asyncio.TimeoutError:
                continue
            try:
                message = message_type.from_json(msg.value.decode())
            except (ValidationError, UnicodeDecodeError) as e:
                logger.error(f"Rejecting unparseable message on {topic}: {e}")
                await self.nack(msg, requeue=False)
                continue
            yield msg, message

    async def ack(self, raw_message: Any) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        tp = TopicPartition(raw_message.topic, raw_message.partition)
        await self._consumer.commit({tp: raw_message.offset + 1})

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        if requeue:
            tp = TopicPartition(raw_message.topic, raw_message.partition)
            self._consumer.seek(tp, raw_message.offset)
        else:
            if self._producer:
                await self._producer.send_and_wait(
                    self.dlq_topic, value=raw_message.value, key=raw_message.key
                )
            await self.ack(raw_message)
