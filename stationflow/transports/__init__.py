"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StationflowConfig, load_config
from .base import BaseTransport, publish_with_retry
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[StationflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("STATIONFLOW_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        rabbit_conf = config.transport.rabbitmq
        return RabbitMQTransport(
            url=rabbit_conf.url,
            delay_queue=rabbit_conf.delay_queue,
            prefetch_count=rabbit_conf.prefetch_count,
        )
    elif backend == "kafka":
        from .kafka import KafkaTransport

        kafka_conf = config.transport.kafka
        return KafkaTransport(
            brokers=kafka_conf.brokers,
            group_id=kafka_conf.group_id,
            dlq_topic=kafka_conf.dlq_topic,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport", "publish_with_retry"]
