"""Instance launcher for stationflow."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from pydantic import JsonValue

from .contracts import ActivationMessage
from .errors import TransientBrokerError
from .graph import GraphStore
from .persistence import InstanceRecord, Status, WorkflowRepository
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class InstanceLauncher:
    """Service responsible for starting new workflow instances."""

    def __init__(
        self,
        repository: WorkflowRepository,
        graph: GraphStore,
        work_queue: WorkQueue,
    ) -> None:
        self._repository = repository
        self._graph = graph
        self._work_queue = work_queue

    async def create(
        self,
        workflow_id: str,
        input: JsonValue = None,
        parent_instance_id: Optional[str] = None,
        parent_activity_id: Optional[str] = None,
    ) -> Tuple[InstanceRecord, ActivationMessage]:
        """Create a running instance and reserve its start activation.

        Must run inside a transaction; publish the returned activation with
        :meth:`publish_start` once it has committed.
        """
        input = input if input is not None else {}
        start = await self._graph.start_node(workflow_id)
        instance = await self._repository.create_instance(
            workflow_id,
            input,
            parent_instance_id=parent_instance_id,
            parent_activity_id=parent_activity_id,
        )
        activation = await self._work_queue.reserve(instance.id, start.id, input)
        return instance, activation

    async def publish_start(
        self, instance: InstanceRecord, activation: ActivationMessage
    ) -> None:
        await self._work_queue.publish(activation)
        logger.info(
            f"Started instance {instance.id} of workflow {instance.workflow_id} "
            f"at node {activation.node_id}"
        )

    async def start(
        self, workflow_id: str, input: JsonValue = None
    ) -> InstanceRecord:
        """Start a top-level instance of ``workflow_id``.

        Args:
            workflow_id: Workflow to run.
            input: Input of the start node and of the instance.

        Returns:
            The persisted instance record.
        """
        async with self._repository.transaction():
            instance, activation = await self.create(workflow_id, input)
        try:
            await self.publish_start(instance, activation)
        except TransientBrokerError as e:
            await self._repository.finish_instance(
                instance.id, Status.FAILED, error=str(e)
            )
            raise
        return instance
