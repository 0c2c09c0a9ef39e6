"""Durable timers backed by broker-side delayed delivery.

A timer is armed by publishing a :class:`~stationflow.contracts.TimerMessage`
with a delay; the broker holds it (TTL plus dead-letter on RabbitMQ, a
sorted set on Redis) and delivers it to the fired topic when due. Nothing
about a pending timer lives in process memory, so timers survive restarts.

The fired consumer closes the waiting activity conditionally. A second
delivery of the same message finds the activity closed and is discarded.
"""

from __future__ import annotations

import logging
from typing import Optional

from .continuation import Closure, Continuation
from .contracts import TimerMessage, now_ms
from .errors import DuplicateDelivery
from .graph import GraphStore
from .models import NodeKind
from .persistence import ActivityRecord, Status, WorkflowRepository
from .transports import BaseTransport, publish_with_retry

logger = logging.getLogger(__name__)


class DurableTimers:
    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        graph: GraphStore,
        continuation: Continuation,
        fired_topic: str = "timer.fired",
        attempts: int = 3,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._graph = graph
        self._continuation = continuation
        self.fired_topic = fired_topic
        self._attempts = attempts

    async def arm(
        self,
        instance_id: str,
        node_id: str,
        workflow_id: str,
        activity_id: str,
        delay_ms: int,
        due_at: Optional[int] = None,
    ) -> TimerMessage:
        """Schedule a wake-up for ``activity_id`` after ``delay_ms``."""
        message = TimerMessage(
            instance_id=instance_id,
            node_id=node_id,
            workflow_id=workflow_id,
            due_at=due_at if due_at is not None else now_ms() + delay_ms,
            activity_id=activity_id,
        )
        await publish_with_retry(
            self._transport,
            self.fired_topic,
            message,
            attempts=self._attempts,
            delay_ms=delay_ms,
        )
        logger.info(
            f"Armed timer for activity {activity_id} ({node_id}) in {delay_ms} ms"
        )
        return message

    async def handle_fired(self, message: TimerMessage) -> Optional[Closure]:
        """Continue the instance that was waiting on ``message``.

        Returns ``None`` when the activity is missing or already closed.
        """
        activity = await self._repository.get_activity(message.activity_id)
        if activity is None:
            logger.warning(f"Timer fired for unknown activity {message.activity_id}")
            return None
        if activity.status is not Status.RUNNING:
            logger.info(f"Discarding duplicate timer for activity {activity.id}")
            return None

        node = await self._graph.find_node(message.workflow_id, message.node_id)
        try:
            if node is not None and node.kind is NodeKind.WORKFLOW:
                return await self._time_out_nested(activity)
            output = {"scheduledFor": message.due_at, "firedAt": now_ms()}
            return await self._continuation.resume(activity, output)
        except DuplicateDelivery:
            logger.info(f"Discarding duplicate timer for activity {activity.id}")
            return None

    async def _time_out_nested(self, activity: ActivityRecord) -> Closure:
        closure = await self._continuation.abort(activity, "nested workflow timed out")
        # the dispatcher records the child id on the waiting activity
        child_id = (
            activity.output.get("childInstanceId")
            if isinstance(activity.output, dict)
            else None
        )
        if child_id:
            await self._continuation.fail_instance(
                child_id, f"Parent activity {activity.id} timed out"
            )
        return closure

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume fired timers until ``lifespan`` elapses."""
        async for raw_message, message in self._transport.subscribe(
            self.fired_topic, TimerMessage, lifespan=lifespan
        ):
            try:
                await self.handle_fired(message)
            except Exception:
                logger.exception(
                    f"Fired timer for activity {message.activity_id} failed"
                )
                await self._transport.nack(raw_message, requeue=False)
                continue
            await self._transport.ack(raw_message)
