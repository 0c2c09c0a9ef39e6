"""The shared path from a finished activity to the next activations.

Every way an activity can finish goes through :class:`Continuation`: a node
completing inline in the dispatcher, a timer firing, a hook callback and a
nested workflow returning to its parent. Closing happens inside the
caller's transaction; publishing happens after it commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import JsonValue

from .actions.expressions import ExpressionEvaluator, apply_expression
from .contracts import ActivationMessage
from .edges import EdgeResolver, edge_context
from .errors import ActionError, DuplicateDelivery, TransientBrokerError
from .events import EngineEvents, LoggingEvents
from .graph import GraphStore
from .join import JoinGate
from .lifecycle import InstanceLifecycle
from .models import Node, NodeKind
from .persistence import ActivityRecord, InstanceRecord, Status, WorkflowRepository
from .state import InstanceStateAggregator
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class Closure:
    """Result of closing an activity, to be finished after commit."""

    activity: ActivityRecord
    activations: List[ActivationMessage] = field(default_factory=list)
    failed_instance: Optional[InstanceRecord] = None

    @property
    def succeeded(self) -> bool:
        return self.activity.status is Status.SUCCESS

    @property
    def next_node_ids(self) -> List[str]:
        return [m.node_id for m in self.activations]


class Continuation:
    def __init__(
        self,
        repository: WorkflowRepository,
        graph: GraphStore,
        work_queue: WorkQueue,
        lifecycle: InstanceLifecycle,
        aggregator: InstanceStateAggregator,
        resolver: Optional[EdgeResolver] = None,
        join_gate: Optional[JoinGate] = None,
        events: Optional[EngineEvents] = None,
        expressions: Optional[ExpressionEvaluator] = None,
    ) -> None:
        self._repository = repository
        self._graph = graph
        self._work_queue = work_queue
        self._lifecycle = lifecycle
        self._aggregator = aggregator
        self._resolver = resolver or EdgeResolver()
        self._join_gate = join_gate or JoinGate(repository, graph)
        self._events = events or LoggingEvents()
        self._expressions = expressions

    # inside a transaction ---------------------------------------------
    async def close(self, activity: ActivityRecord, output: JsonValue) -> Closure:
        """Close ``activity`` successfully and reserve the next activations.

        A failing output transform closes the activity as failed instead.
        Raises :class:`DuplicateDelivery` if the activity was already closed.
        """
        await self._repository.lock_instance(activity.instance_id)
        node = await self._graph.node(activity.workflow_id, activity.node_id)
        try:
            output = await self._transform_output(node, activity, output)
        except ActionError as e:
            return await self.close_failed(activity, str(e))

        if not await self._repository.close_activity(
            activity.id, Status.SUCCESS, output=output
        ):
            raise DuplicateDelivery(activity.id)
        closed = await self._repository.get_activity(activity.id)
        activations = await self._plan(closed, node, output)
        return Closure(closed, activations)

    async def close_failed(self, activity: ActivityRecord, error: str) -> Closure:
        """Close ``activity`` as failed and fail its instance."""
        await self._repository.lock_instance(activity.instance_id)
        if not await self._repository.close_activity(
            activity.id, Status.FAILED, error=error
        ):
            raise DuplicateDelivery(activity.id)
        closed = await self._repository.get_activity(activity.id)
        failed = await self._lifecycle.fail(
            activity.instance_id, f"Node {activity.node_id} failed: {error}"
        )
        return Closure(closed, failed_instance=failed)

    async def _transform_output(
        self, node: Node, activity: ActivityRecord, output: JsonValue
    ) -> JsonValue:
        if not node.output_expression:
            return output
        state = await self._aggregator.compute(activity.instance_id)
        context: dict[str, Any] = dict(state)
        context.update(input=activity.input, output=output, state=state)
        return apply_expression(
            self._expressions, node.output_expression, output, context
        )

    async def _plan(
        self, activity: ActivityRecord, node: Node, output: JsonValue
    ) -> List[ActivationMessage]:
        instance = await self._repository.get_instance(activity.instance_id)
        if instance is None or instance.status is not Status.RUNNING:
            logger.info(
                f"Instance {activity.instance_id} is no longer running; "
                f"not continuing after {node.id}"
            )
            return []

        state = await self._aggregator.compute(instance.id)
        edges = await self._graph.outbound(node.id)
        targets = self._resolver.resolve(edges, edge_context(output, state))

        activations: List[ActivationMessage] = []
        for target_id in targets:
            target = await self._graph.node(node.workflow_id, target_id)
            if target.kind is NodeKind.JOIN and not await self._join_gate.can_enter(
                instance.id, target
            ):
                logger.info(f"Join {target_id} not ready for instance {instance.id}")
                continue
            activations.append(
                await self._work_queue.reserve(instance.id, target_id, output)
            )
        return activations

    # after commit -----------------------------------------------------
    async def finish(self, closure: Closure) -> None:
        """Emit events, publish reserved activations or settle the instance."""
        self._events.activity_updated(closure.activity)
        instance_id = closure.activity.instance_id

        if closure.failed_instance is not None:
            self._events.instance_updated(closure.failed_instance)
            await self._propagate_failure(closure.failed_instance)
            return
        if not closure.succeeded:
            return

        for index, message in enumerate(closure.activations):
            try:
                await self._work_queue.publish(message)
            except TransientBrokerError as e:
                logger.error(f"Could not continue instance {instance_id}: {e}")
                for unsent in closure.activations[index + 1 :]:
                    await self._repository.release_activation(
                        unsent.instance_id, unsent.activation_id
                    )
                await self.fail_instance(instance_id, str(e))
                return

        if not closure.activations:
            await self.settle(instance_id)

    async def resume(self, activity: ActivityRecord, output: JsonValue) -> Closure:
        """Complete a suspended activity and continue along its edges."""
        async with self._repository.transaction():
            closure = await self.close(activity, output)
        await self.finish(closure)
        return closure

    async def abort(self, activity: ActivityRecord, error: str) -> Closure:
        """Fail a suspended activity and with it the instance."""
        async with self._repository.transaction():
            closure = await self.close_failed(activity, error)
        await self.finish(closure)
        return closure

    async def settle(self, instance_id: str) -> Optional[InstanceRecord]:
        """Close the instance if it is done and hand its output to a waiting parent."""
        finished = await self._lifecycle.settle(instance_id)
        if finished is None:
            return None
        self._events.instance_updated(finished)
        await self._resume_parent(finished)
        return finished

    async def fail_instance(
        self, instance_id: str, error: str
    ) -> Optional[InstanceRecord]:
        failed = await self._lifecycle.fail(instance_id, error)
        if failed is None:
            return None
        self._events.instance_updated(failed)
        await self._propagate_failure(failed)
        return failed

    async def _waiting_parent(self, child: InstanceRecord) -> Optional[ActivityRecord]:
        if not child.parent_activity_id:
            return None
        parent = await self._repository.get_activity(child.parent_activity_id)
        if parent is None or parent.status is not Status.RUNNING:
            return None
        return parent

    async def _resume_parent(self, child: InstanceRecord) -> None:
        parent = await self._waiting_parent(child)
        if parent is None:
            return
        logger.info(f"Nested instance {child.id} finished; resuming {parent.instance_id}")
        try:
            await self.resume(parent, child.output)
        except DuplicateDelivery:
            logger.debug(f"Parent activity {parent.id} already closed")

    async def _propagate_failure(self, child: InstanceRecord) -> None:
        parent = await self._waiting_parent(child)
        if parent is None:
            return
        try:
            await self.abort(parent, f"Nested instance {child.id} failed: {child.error}")
        except DuplicateDelivery:
            logger.debug(f"Parent activity {parent.id} already closed")
