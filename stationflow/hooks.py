"""Entry point for external hook callbacks."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from pydantic import JsonValue

from .continuation import Closure, Continuation
from .errors import ConfigurationError, DuplicateDelivery
from .graph import GraphStore
from .models import NodeKind
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class HookReceiver:
    """Completes waiting ``hook`` activities from external callbacks.

    The HTTP surface that receives callbacks lives outside the engine; it
    hands the request to :meth:`complete` or :meth:`receive`.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        graph: GraphStore,
        continuation: Continuation,
    ) -> None:
        self._repository = repository
        self._graph = graph
        self._continuation = continuation

    async def complete(
        self,
        workflow_id: str,
        node_id: str,
        instance_id: str,
        body: JsonValue = None,
    ) -> Optional[Closure]:
        """Close the running hook activity of ``node_id`` with ``{"body": body}``.

        Returns ``None`` when no activity is waiting, for example because an
        earlier callback already completed it.

        Raises:
            ConfigurationError: The node is not a hook of ``workflow_id`` or
                the instance does not run ``workflow_id``.
        """
        node = await self._graph.node(workflow_id, node_id)
        if node.kind is not NodeKind.HOOK:
            raise ConfigurationError(f"Node {node_id} is not a hook node")
        instance = await self._repository.get_instance(instance_id)
        if instance is None or instance.workflow_id != workflow_id:
            raise ConfigurationError(
                f"Instance {instance_id} does not belong to workflow {workflow_id}"
            )

        activity = await self._repository.find_running_activity(instance_id, node_id)
        if activity is None:
            logger.info(f"No hook waiting on {node_id} for instance {instance_id}")
            return None
        try:
            return await self._continuation.resume(activity, {"body": body})
        except DuplicateDelivery:
            logger.info(f"Hook activity {activity.id} was already completed")
            return None

    async def receive(
        self, workflow_id: str, body: Mapping[str, Any]
    ) -> Optional[Closure]:
        """General callback form: node and instance are named in ``body``."""
        node_id = body.get("workflow_node")
        if not node_id:
            raise ConfigurationError("workflow_node required")
        instance_id = body.get("instanceId")
        if not instance_id:
            raise ConfigurationError("instanceId required")
        return await self.complete(workflow_id, str(node_id), str(instance_id), dict(body))
