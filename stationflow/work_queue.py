"""Durable channel of node activations."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import JsonValue

from .contracts import ActivationMessage
from .errors import ConfigurationError, TransientBrokerError
from .persistence import WorkflowRepository
from .transports import BaseTransport, publish_with_retry

logger = logging.getLogger(__name__)

ActivationHandler = Callable[[ActivationMessage], Awaitable[Any]]


class WorkQueue:
    """Publishes and consumes activation messages keyed by instance id.

    Every activation is counted on its instance from the moment it is
    reserved until a dispatcher consumes it, so an instance is never closed
    while work for it is still in flight.
    """

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        topic: str = "activity-execution",
        attempts: int = 3,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self.topic = topic
        self._attempts = attempts

    async def reserve(
        self, instance_id: str, node_id: str, input: JsonValue = None
    ) -> ActivationMessage:
        """Count an activation on the instance; call inside the producing transaction."""
        message = ActivationMessage(
            instance_id=instance_id,
            node_id=node_id,
            input=input if input is not None else {},
        )
        await self._repository.reserve_activation(instance_id, message.activation_id)
        return message

    async def publish(self, message: ActivationMessage) -> None:
        """Publish a reserved activation; release the reservation on failure."""
        try:
            await publish_with_retry(
                self._transport, self.topic, message, attempts=self._attempts
            )
        except TransientBrokerError:
            await self._repository.release_activation(
                message.instance_id, message.activation_id
            )
            raise
        logger.debug(
            f"Enqueued node {message.node_id} for instance {message.instance_id}"
        )

    async def enqueue(
        self, instance_id: str, node_id: str, input: JsonValue = None
    ) -> ActivationMessage:
        message = await self.reserve(instance_id, node_id, input)
        await self.publish(message)
        return message

    async def consume(
        self, handler: ActivationHandler, lifespan: Optional[float] = None
    ) -> None:
        """Feed activations to ``handler`` until ``lifespan`` elapses.

        Messages are acknowledged once handled. Configuration errors and
        unexpected failures reject the message without requeue.
        """
        async for raw_message, message in self._transport.subscribe(
            self.topic, ActivationMessage, lifespan=lifespan
        ):
            try:
                await handler(message)
            except ConfigurationError as e:
                logger.error(
                    f"Rejecting activation of {message.node_id} for instance "
                    f"{message.instance_id}: {e}"
                )
                await self._transport.nack(raw_message, requeue=False)
                continue
            except Exception:
                logger.exception(
                    f"Activation of {message.node_id} for instance "
                    f"{message.instance_id} failed"
                )
                await self._transport.nack(raw_message, requeue=False)
                continue
            await self._transport.ack(raw_message)
