"""Activity execution engine for stationflow workflows."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from pydantic import JsonValue

from .actions.expressions import ExpressionEvaluator, apply_expression
from .actions.http import ActionExecutor
from .continuation import Closure, Continuation
from .contracts import ActivationMessage, now_ms
from .dispatch import InstanceLauncher
from .errors import ActionError, ConfigurationError, TransientBrokerError
from .events import EngineEvents, LoggingEvents
from .graph import GraphStore
from .join import JoinGate
from .models import HttpConfig, Node, NodeKind, TimerConfig, WorkflowConfig
from .persistence import ActivityRecord, InstanceRecord, Status, WorkflowRepository
from .state import InstanceStateAggregator
from .timers import DurableTimers
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

AfterCommit = Callable[[], Awaitable[None]]

# returned by a node handler that leaves its activity running
SUSPENDED: Any = object()


class DispatchStatus(str, Enum):
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DispatchOutcome:
    """What happened to one activation."""

    status: DispatchStatus
    activity: Optional[ActivityRecord] = None
    next_node_ids: List[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        """True when the path ended here without scheduling more work."""
        return self.status is not DispatchStatus.SUSPENDED and not self.next_node_ids


class ActivityDispatcher:
    """Executes queued node activations.

    Each activation runs in one transaction: the activation is consumed, an
    activity is created, the node's action runs and the activity is closed
    together with the reservation of the next activations. Broker work
    (publishing activations, arming timers, starting nested instances) only
    happens after that transaction has committed.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        graph: GraphStore,
        work_queue: WorkQueue,
        continuation: Continuation,
        timers: DurableTimers,
        launcher: InstanceLauncher,
        actions: ActionExecutor,
        aggregator: InstanceStateAggregator,
        join_gate: Optional[JoinGate] = None,
        events: Optional[EngineEvents] = None,
        expressions: Optional[ExpressionEvaluator] = None,
        http_timeout_ms: int = 15000,
    ) -> None:
        self._repository = repository
        self._graph = graph
        self._work_queue = work_queue
        self._continuation = continuation
        self._timers = timers
        self._launcher = launcher
        self._actions = actions
        self._aggregator = aggregator
        self._join_gate = join_gate or JoinGate(repository, graph)
        self._events = events or LoggingEvents()
        self._expressions = expressions
        self._http_timeout_ms = http_timeout_ms

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume activations from the work queue."""
        await self._work_queue.consume(self.handle, lifespan=lifespan)

    async def handle(self, message: ActivationMessage) -> DispatchOutcome:
        return await self.execute(
            message.instance_id,
            message.node_id,
            message.input,
            activation_id=message.activation_id,
        )

    async def execute(
        self,
        instance_id: str,
        node_id: str,
        input: JsonValue = None,
        activation_id: Optional[str] = None,
    ) -> DispatchOutcome:
        """Run ``node_id`` for ``instance_id`` with ``input``.

        ``activation_id`` is the reservation made when the activation was
        queued. A second delivery of the same activation is skipped. Direct
        calls without one do not touch the pending counter.

        Raises:
            ConfigurationError: The instance or node does not exist. The
                transaction is rolled back and the instance, if any, is failed.
        """
        after_commit: List[AfterCommit] = []
        try:
            async with self._repository.transaction():
                outcome, closure = await self._execute_node(
                    instance_id,
                    node_id,
                    input if input is not None else {},
                    activation_id,
                    after_commit,
                )
        except ConfigurationError as e:
            await self._reject(instance_id, node_id, activation_id, e)
            raise

        if outcome.status is DispatchStatus.SUSPENDED:
            self._events.activity_updated(outcome.activity)
        for callback in after_commit:
            await callback()
        if closure is not None:
            await self._continuation.finish(closure)
        return outcome

    async def _reject(
        self,
        instance_id: str,
        node_id: str,
        activation_id: Optional[str],
        error: ConfigurationError,
    ) -> None:
        if activation_id is not None:
            if not await self._repository.release_activation(instance_id, activation_id):
                return
        if await self._repository.get_instance(instance_id) is None:
            return
        logger.error(f"Failing instance {instance_id} at node {node_id}: {error}")
        await self._continuation.fail_instance(
            instance_id, f"Node {node_id} failed: {error}"
        )

    async def _execute_node(
        self,
        instance_id: str,
        node_id: str,
        input: JsonValue,
        activation_id: Optional[str],
        after_commit: List[AfterCommit],
    ) -> Tuple[DispatchOutcome, Optional[Closure]]:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise ConfigurationError(f"Instance not found: {instance_id}")
        if activation_id is not None and not await self._repository.release_activation(
            instance_id, activation_id
        ):
            logger.info(
                f"Discarding redelivered activation {activation_id} of {node_id} "
                f"for instance {instance_id}"
            )
            return DispatchOutcome(DispatchStatus.SKIPPED), None
        if instance.status is not Status.RUNNING:
            logger.info(
                f"Discarding activation of {node_id}: instance {instance_id} "
                f"is {instance.status.value}"
            )
            return DispatchOutcome(DispatchStatus.SKIPPED), None

        node = await self._graph.node(instance.workflow_id, node_id)
        if node.kind is NodeKind.JOIN:
            await self._repository.lock_instance(instance_id)
            if not await self._join_gate.can_enter(instance_id, node):
                logger.info(f"Join {node_id} not admitted for instance {instance_id}")
                after_commit.append(partial(self._continuation.settle, instance_id))
                return DispatchOutcome(DispatchStatus.SKIPPED), None

        activity = await self._repository.create_activity(
            instance_id, instance.workflow_id, node_id, input
        )
        try:
            node_input = await self._transform_input(node, instance_id, input)
            output = await self._run(node, instance, activity, node_input, after_commit)
        except ConfigurationError:
            raise
        except ActionError as e:
            logger.warning(f"Node {node_id} failed for instance {instance_id}: {e}")
            closure = await self._continuation.close_failed(activity, str(e))
            return DispatchOutcome(DispatchStatus.FAILED, closure.activity), closure
        except Exception as e:
            logger.exception(f"Unexpected error in node {node_id} for instance {instance_id}")
            closure = await self._continuation.close_failed(
                activity, f"{type(e).__name__}: {e}"
            )
            return DispatchOutcome(DispatchStatus.FAILED, closure.activity), closure

        if output is SUSPENDED:
            suspended = await self._repository.get_activity(activity.id)
            return DispatchOutcome(DispatchStatus.SUSPENDED, suspended), None

        closure = await self._continuation.close(activity, output)
        status = DispatchStatus.COMPLETED if closure.succeeded else DispatchStatus.FAILED
        return DispatchOutcome(status, closure.activity, closure.next_node_ids), closure

    async def _transform_input(
        self, node: Node, instance_id: str, input: JsonValue
    ) -> JsonValue:
        if not node.input_expression:
            return input
        state = await self._aggregator.compute(instance_id)
        context: dict[str, Any] = dict(state)
        context.update(input=input, state=state)
        return apply_expression(self._expressions, node.input_expression, input, context)

    async def _run(
        self,
        node: Node,
        instance: InstanceRecord,
        activity: ActivityRecord,
        input: JsonValue,
        after_commit: List[AfterCommit],
    ) -> Any:
        kind = node.kind
        if kind is NodeKind.HTTP:
            return await self._run_http(node.config, input)
        if kind is NodeKind.HOOK:
            logger.info(f"Hook {node.id} of instance {instance.id} awaits its callback")
            return SUSPENDED
        if kind is NodeKind.TIMER:
            return await self._run_timer(node.config, activity, after_commit)
        if kind is NodeKind.JOIN:
            return {"join": "ok"}
        if kind is NodeKind.WORKFLOW:
            return await self._run_workflow(
                node.config, instance, activity, input, after_commit
            )
        return input

    async def _run_http(self, cfg: HttpConfig, input: JsonValue) -> JsonValue:
        source = input if isinstance(input, dict) else {}
        url = cfg.url or source.get("url")
        if not url:
            raise ActionError("http.url required")
        if cfg.body is not None:
            body = cfg.body
        elif source.get("body") is not None:
            body = source["body"]
        else:
            body = input

        result = await self._actions.execute(
            url,
            method=cfg.method,
            headers=cfg.headers,
            body=body,
            timeout_ms=cfg.timeout_ms or self._http_timeout_ms,
        )
        if not result.success:
            detail = result.data if isinstance(result.data, str) else json.dumps(result.data)
            raise ActionError(f"HTTP {result.status}: {detail[:300]}", status=result.status)
        return result.data if isinstance(result.data, dict) else {"data": result.data}

    async def _run_timer(
        self,
        cfg: TimerConfig,
        activity: ActivityRecord,
        after_commit: List[AfterCommit],
    ) -> Any:
        due_at = now_ms() + cfg.delay_ms
        await self._repository.record_activity_output(
            activity.id, {"scheduledFor": due_at}
        )
        after_commit.append(partial(self._arm, activity, cfg.delay_ms, due_at))
        return SUSPENDED

    async def _run_workflow(
        self,
        cfg: WorkflowConfig,
        instance: InstanceRecord,
        activity: ActivityRecord,
        input: JsonValue,
        after_commit: List[AfterCommit],
    ) -> Any:
        child, activation = await self._launcher.create(
            cfg.workflow_id,
            input,
            parent_instance_id=instance.id,
            parent_activity_id=activity.id,
        )
        await self._repository.record_activity_output(
            activity.id, {"childInstanceId": child.id}
        )
        after_commit.append(
            partial(self._start_child, activity, child, activation, cfg.timeout_ms)
        )
        return SUSPENDED

    async def _arm(
        self, activity: ActivityRecord, delay_ms: int, due_at: Optional[int] = None
    ) -> None:
        try:
            await self._timers.arm(
                activity.instance_id,
                activity.node_id,
                activity.workflow_id,
                activity.id,
                delay_ms,
                due_at=due_at,
            )
        except TransientBrokerError as e:
            logger.error(f"Could not arm timer for activity {activity.id}: {e}")
            await self._continuation.abort(activity, f"Timer could not be armed: {e}")

    async def _start_child(
        self,
        activity: ActivityRecord,
        child: InstanceRecord,
        activation: ActivationMessage,
        timeout_ms: Optional[int],
    ) -> None:
        try:
            await self._launcher.publish_start(child, activation)
        except TransientBrokerError as e:
            logger.error(f"Could not start nested instance {child.id}: {e}")
            await self._continuation.fail_instance(child.id, str(e))
            return
        if timeout_ms is not None:
            await self._arm(activity, timeout_ms)
