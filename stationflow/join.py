"""Admission control for join nodes."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from .conditions import ConditionEvaluator
from .errors import ConfigurationError
from .graph import GraphStore
from .models import JoinConfig, Node
from .persistence import ActivityRecord, Status, WorkflowRepository
from .state import fold_outputs, latest_by_node

logger = logging.getLogger(__name__)


def join_context(activities: Iterable[ActivityRecord]) -> dict[str, Any]:
    """Instance state plus the latest status and output of every node.

    Prerequisites can test merged state (``decision = "approve"``) or a specific
    node (``nodes.review.status = "success"``).
    """
    activities = list(activities)
    state = fold_outputs(activities)
    nodes = {
        node_id: {"status": activity.status.value, "output": activity.output}
        for node_id, activity in latest_by_node(activities).items()
    }
    context: dict[str, Any] = dict(state)
    context["state"] = state
    context["nodes"] = nodes
    return context


class JoinGate:
    """Decides whether a join node may execute now.

    The gate is consulted before an activation toward the join is published
    and again by the dispatcher before the join's activity is created. A
    closed gate means "not yet", never an error.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        graph: GraphStore,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self._repository = repository
        self._graph = graph
        self._evaluator = evaluator or ConditionEvaluator()

    async def can_enter(self, instance_id: str, node: Node) -> bool:
        if not isinstance(node.config, JoinConfig):
            raise ConfigurationError(f"Node {node.id} is not a join node")
        activities = await self._repository.list_activities(instance_id)
        latest = latest_by_node(activities)
        sources = [edge.source_id for edge in await self._graph.inbound(node.id)]

        if self._already_admitted(node.id, sources, latest):
            logger.debug(f"Join {node.id} already admitted for instance {instance_id}")
            return False

        if not node.config.conditions:
            return all(
                source in latest and latest[source].status is Status.SUCCESS
                for source in sources
            )

        context = join_context(activities)
        return all(self._evaluator.evaluate(c, context) for c in node.config.conditions)

    @staticmethod
    def _already_admitted(
        node_id: str, sources: list[str], latest: dict[str, ActivityRecord]
    ) -> bool:
        """True when the join ran after the latest activity of every source."""
        own = latest.get(node_id)
        if own is None:
            return False
        source_seqs = [latest[s].seq for s in sources if s in latest]
        return not source_seqs or own.seq > max(source_seqs)
