"""Read-only access to workflow graphs."""

from __future__ import annotations

from typing import Optional

from .errors import ConfigurationError, NodeNotFoundError, WorkflowNotFoundError
from .models import Edge, Node, Workflow
from .persistence import WorkflowRepository


class GraphStore:
    """Look up nodes and edges, raising configuration errors for missing ones."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def workflow(self, workflow_id: str) -> Workflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def node(self, workflow_id: str, node_id: str) -> Node:
        """Return ``node_id`` if it belongs to ``workflow_id``."""
        node = await self._repository.get_node(node_id)
        if node is None or node.workflow_id != workflow_id:
            raise NodeNotFoundError(node_id, workflow_id)
        return node

    async def find_node(self, workflow_id: str, node_id: str) -> Optional[Node]:
        try:
            return await self.node(workflow_id, node_id)
        except NodeNotFoundError:
            return None

    async def outbound(self, node_id: str) -> list[Edge]:
        return await self._repository.list_outbound_edges(node_id)

    async def inbound(self, node_id: str) -> list[Edge]:
        return await self._repository.list_inbound_edges(node_id)

    async def start_node(self, workflow_id: str) -> Node:
        """First node, in import order, that no edge points to."""
        workflow = await self.workflow(workflow_id)
        targets = {edge.target_id for edge in workflow.edges}
        for node in workflow.nodes:
            if node.id not in targets:
                return node
        raise ConfigurationError(f"Workflow {workflow_id} has no start node")
