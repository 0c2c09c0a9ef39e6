"""Engine facade wiring every component from configuration."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Mapping, Optional, Union

from pydantic import JsonValue

from .actions.expressions import ExpressionEvaluator
from .actions.http import ActionExecutor, HttpActionExecutor
from .conditions import ConditionEvaluator
from .config import EngineConfig, StationflowConfig, load_config
from .continuation import Closure, Continuation
from .dispatch import InstanceLauncher
from .edges import EdgeResolver
from .events import EngineEvents, LoggingEvents
from .execute import ActivityDispatcher, DispatchOutcome
from .graph import GraphStore
from .hooks import HookReceiver
from .join import JoinGate
from .lifecycle import InstanceLifecycle
from .models import Workflow
from .persistence import InstanceRecord, WorkflowRepository, get_repository
from .state import InstanceStateAggregator
from .timers import DurableTimers
from .transports import BaseTransport, get_transport
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """All engine components over one repository and its transports.

    The engine owns the broker connections and the repository; use it as an
    async context manager::

        async with build_engine() as engine:
            await engine.load_workflow(workflow)
            await engine.start_instance(workflow.id, {"order": 42})
            await engine.run(lifespan=60)
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        timer_transport: Optional[BaseTransport] = None,
        actions: Optional[ActionExecutor] = None,
        events: Optional[EngineEvents] = None,
        expressions: Optional[ExpressionEvaluator] = None,
        conditions: Optional[ConditionEvaluator] = None,
        engine_config: Optional[EngineConfig] = None,
    ) -> None:
        config = engine_config or EngineConfig()
        conditions = conditions or ConditionEvaluator()

        self.repository = repository
        self.transport = transport
        self.timer_transport = timer_transport or transport
        self.actions = actions or HttpActionExecutor()
        self.events = events or LoggingEvents()

        self.graph = GraphStore(repository)
        self.aggregator = InstanceStateAggregator(repository)
        self.join_gate = JoinGate(repository, self.graph, conditions)
        self.lifecycle = InstanceLifecycle(repository, self.aggregator)
        self.work_queue = WorkQueue(
            transport, repository, config.activation_topic, config.publish_attempts
        )
        self.continuation = Continuation(
            repository,
            self.graph,
            self.work_queue,
            self.lifecycle,
            self.aggregator,
            resolver=EdgeResolver(conditions),
            join_gate=self.join_gate,
            events=self.events,
            expressions=expressions,
        )
        self.timers = DurableTimers(
            self.timer_transport,
            repository,
            self.graph,
            self.continuation,
            fired_topic=config.fired_topic,
            attempts=config.publish_attempts,
        )
        self.launcher = InstanceLauncher(repository, self.graph, self.work_queue)
        self.dispatcher = ActivityDispatcher(
            repository,
            self.graph,
            self.work_queue,
            self.continuation,
            self.timers,
            self.launcher,
            self.actions,
            self.aggregator,
            join_gate=self.join_gate,
            events=self.events,
            expressions=expressions,
            http_timeout_ms=config.http_timeout_ms,
        )
        self.hooks = HookReceiver(repository, self.graph, self.continuation)

    async def __aenter__(self) -> "WorkflowEngine":
        await self.transport.connect()
        if self.timer_transport is not self.transport:
            await self.timer_transport.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Release broker connections, the HTTP client and the repository."""
        if self.timer_transport is not self.transport:
            await self.timer_transport.disconnect()
        await self.transport.disconnect()
        aclose = getattr(self.actions, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.repository.close()

    async def load_workflow(
        self, workflow: Union[Workflow, Mapping[str, Any]]
    ) -> Workflow:
        if not isinstance(workflow, Workflow):
            workflow = Workflow.model_validate(workflow)
        await self.repository.save_workflow(workflow)
        logger.info(
            f"Loaded workflow {workflow.id} with {len(workflow.nodes)} nodes "
            f"and {len(workflow.edges)} edges"
        )
        return workflow

    async def start_instance(
        self, workflow_id: str, input: JsonValue = None
    ) -> InstanceRecord:
        return await self.launcher.start(workflow_id, input)

    async def execute(
        self, instance_id: str, node_id: str, input: JsonValue = None
    ) -> DispatchOutcome:
        return await self.dispatcher.execute(instance_id, node_id, input)

    async def complete_hook(
        self,
        workflow_id: str,
        node_id: str,
        instance_id: str,
        body: JsonValue = None,
    ) -> Optional[Closure]:
        return await self.hooks.complete(workflow_id, node_id, instance_id, body)

    async def instance_state(self, instance_id: str) -> dict[str, Any]:
        return await self.aggregator.compute(instance_id)

    async def run_worker(self, lifespan: Optional[float] = None) -> None:
        """Consume node activations."""
        await self.dispatcher.start(lifespan=lifespan)

    async def run_timers(self, lifespan: Optional[float] = None) -> None:
        """Consume fired timers."""
        await self.timers.start(lifespan=lifespan)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run the activation worker and the timer consumer side by side."""
        await asyncio.gather(
            self.run_worker(lifespan=lifespan), self.run_timers(lifespan=lifespan)
        )


def build_engine(
    config: Optional[StationflowConfig] = None, **overrides: Any
) -> WorkflowEngine:
    """Create an engine from configuration.

    The timer consumer shares the activation transport when both use the
    same backend. ``overrides`` are passed on to :class:`WorkflowEngine`.
    """
    config = config or load_config()
    backend = (os.getenv("STATIONFLOW_TRANSPORT") or config.transport.backend).lower()
    repository = overrides.pop("repository", None) or get_repository(config=config)
    transport = overrides.pop("transport", None) or get_transport(backend, config)
    if "timer_transport" in overrides:
        timer_transport = overrides.pop("timer_transport")
    elif config.transport.timer_backend == backend:
        timer_transport = transport
    else:
        timer_transport = get_transport(config.transport.timer_backend, config)
    return WorkflowEngine(
        repository,
        transport,
        timer_transport,
        engine_config=config.engine,
        **overrides,
    )
