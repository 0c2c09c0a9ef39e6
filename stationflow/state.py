"""Derived instance state."""

from __future__ import annotations

from typing import Any, Iterable

from .persistence import ActivityRecord, Status, WorkflowRepository


def fold_outputs(activities: Iterable[ActivityRecord]) -> dict[str, Any]:
    """Merge successful object outputs in creation order; later keys win."""
    state: dict[str, Any] = {}
    for activity in sorted(activities, key=lambda a: a.seq):
        if activity.status is Status.SUCCESS and isinstance(activity.output, dict):
            state.update(activity.output)
    return state


def latest_by_node(activities: Iterable[ActivityRecord]) -> dict[str, ActivityRecord]:
    latest: dict[str, ActivityRecord] = {}
    for activity in sorted(activities, key=lambda a: a.seq):
        latest[activity.node_id] = activity
    return latest


class InstanceStateAggregator:
    """Computes instance state from persisted activities on demand."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def compute(self, instance_id: str) -> dict[str, Any]:
        return fold_outputs(await self._repository.list_activities(instance_id))
