"""Next-node resolution over a node's outbound edges."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from .conditions import ConditionEvaluator
from .models import Edge, EdgeKind

logger = logging.getLogger(__name__)


class EdgeResolver:
    """Turn outbound edges plus an evaluation context into target node ids.

    Edges are visited in import order. ``if`` edges form a first-match-wins
    chain: once one matches, later ``if`` edges are not evaluated. ``normal``
    and ``loop`` edges are always followed, so several of them fan out.
    """

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None) -> None:
        self._evaluator = evaluator or ConditionEvaluator()

    def resolve(self, edges: Iterable[Edge], context: Any) -> list[str]:
        targets: list[str] = []
        branch_taken = False
        for edge in edges:
            if edge.kind is EdgeKind.IF:
                if branch_taken:
                    continue
                if self._evaluator.evaluate(edge.condition, context):
                    branch_taken = True
                    targets.append(edge.target_id)
            else:
                targets.append(edge.target_id)
        # a node is activated once even if several edges lead to it
        return list(dict.fromkeys(targets))


def edge_context(output: Any, state: dict[str, Any]) -> dict[str, Any]:
    """Context for edge conditions: state overlaid with the activity output.

    ``output`` and ``state`` stay reachable under their own keys.
    """
    context: dict[str, Any] = dict(state)
    if isinstance(output, dict):
        context.update(output)
    context["output"] = output
    context["state"] = state
    return context
