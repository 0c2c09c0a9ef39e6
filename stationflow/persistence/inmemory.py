"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import copy
import uuid
from typing import Any, Dict, Optional

from pydantic import JsonValue

from ..models import Edge, Node, Workflow
from .models import ActivityRecord, InstanceRecord, Status, utcnow
from .repository import SerializedTransactions, WorkflowRepository


class InMemoryWorkflowRepository(SerializedTransactions, WorkflowRepository):
    """Store graphs and execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A failed transaction restores the
    instance and activity state captured when it began.
    """

    def __init__(self) -> None:
        self._init_serialization()
        self._workflows: Dict[str, Workflow] = {}
        self._nodes: Dict[str, Node] = {}
        self._instances: Dict[str, InstanceRecord] = {}
        self._activities: Dict[str, ActivityRecord] = {}
        self._reservations: Dict[str, str] = {}
        self._seq = 0
        self._snapshot: Optional[tuple[Any, ...]] = None

    async def _begin(self) -> None:
        self._snapshot = copy.deepcopy(
            (self._instances, self._activities, self._reservations, self._seq)
        )

    async def _commit(self) -> None:
        self._snapshot = None

    async def _rollback(self) -> None:
        if self._snapshot is not None:
            (
                self._instances,
                self._activities,
                self._reservations,
                self._seq,
            ) = self._snapshot
            self._snapshot = None

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        async with self._guard():
            previous = self._workflows.get(workflow.id)
            if previous:
                for node in previous.nodes:
                    self._nodes.pop(node.id, None)
            stored = workflow.model_copy(deep=True)
            self._workflows[workflow.id] = stored
            for node in stored.nodes:
                self._nodes[node.id] = node

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def get_node(self, node_id: str) -> Node | None:
        node = self._nodes.get(node_id)
        return node.model_copy(deep=True) if node else None

    async def list_outbound_edges(self, node_id: str) -> list[Edge]:
        node = self._nodes.get(node_id)
        if not node:
            return []
        wf = self._workflows[node.workflow_id]
        return [e.model_copy() for e in wf.edges if e.source_id == node_id]

    async def list_inbound_edges(self, node_id: str) -> list[Edge]:
        node = self._nodes.get(node_id)
        if not node:
            return []
        wf = self._workflows[node.workflow_id]
        return [e.model_copy() for e in wf.edges if e.target_id == node_id]

    # ------------------------------------------------------------------
    async def create_instance(
        self,
        workflow_id: str,
        input: JsonValue = None,
        parent_instance_id: Optional[str] = None,
        parent_activity_id: Optional[str] = None,
    ) -> InstanceRecord:
        async with self._guard():
            instance = InstanceRecord(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                input=input,
                parent_instance_id=parent_instance_id,
                parent_activity_id=parent_activity_id,
            )
            self._instances[instance.id] = instance
            return instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self, workflow_id: Optional[str] = None
    ) -> list[InstanceRecord]:
        instances = [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if workflow_id is None or i.workflow_id == workflow_id
        ]
        return sorted(instances, key=lambda i: i.started_at, reverse=True)

    async def finish_instance(
        self,
        instance_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        async with self._guard():
            instance = self._instances.get(instance_id)
            if not instance or instance.status is not Status.RUNNING:
                return False
            instance.status = status
            instance.output = output
            instance.error = error
            instance.finished_at = utcnow()
            return True

    async def reserve_activation(self, instance_id: str, activation_id: str) -> None:
        async with self._guard():
            instance = self._instances.get(instance_id)
            if not instance or activation_id in self._reservations:
                return
            self._reservations[activation_id] = instance_id
            instance.pending_activations += 1

    async def release_activation(self, instance_id: str, activation_id: str) -> bool:
        async with self._guard():
            if self._reservations.get(activation_id) != instance_id:
                return False
            del self._reservations[activation_id]
            instance = self._instances.get(instance_id)
            if instance:
                instance.pending_activations -= 1
            return True

    async def lock_instance(self, instance_id: str) -> None:
        # transactions already hold the repository lock
        pass

    # ------------------------------------------------------------------
    async def create_activity(
        self, instance_id: str, workflow_id: str, node_id: str, input: JsonValue = None
    ) -> ActivityRecord:
        async with self._guard():
            self._seq += 1
            activity = ActivityRecord(
                id=str(uuid.uuid4()),
                seq=self._seq,
                instance_id=instance_id,
                workflow_id=workflow_id,
                node_id=node_id,
                input=input,
            )
            self._activities[activity.id] = activity
            return activity.model_copy(deep=True)

    async def record_activity_output(self, activity_id: str, output: JsonValue) -> None:
        async with self._guard():
            activity = self._activities.get(activity_id)
            if activity and activity.status is Status.RUNNING:
                activity.output = output
                activity.updated_at = utcnow()

    async def close_activity(
        self,
        activity_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        async with self._guard():
            activity = self._activities.get(activity_id)
            if not activity or activity.status is not Status.RUNNING:
                return False
            activity.status = status
            if output is not None:
                activity.output = output
            activity.error = error
            activity.finished_at = activity.updated_at = utcnow()
            return True

    async def get_activity(self, activity_id: str) -> ActivityRecord | None:
        activity = self._activities.get(activity_id)
        return activity.model_copy(deep=True) if activity else None

    async def list_activities(self, instance_id: str) -> list[ActivityRecord]:
        activities = [
            a.model_copy(deep=True)
            for a in self._activities.values()
            if a.instance_id == instance_id
        ]
        return sorted(activities, key=lambda a: a.seq)

    async def find_running_activity(
        self, instance_id: str, node_id: str
    ) -> ActivityRecord | None:
        running = [
            a
            for a in await self.list_activities(instance_id)
            if a.node_id == node_id and a.status is Status.RUNNING
        ]
        return running[-1] if running else None

    async def count_running_activities(self, instance_id: str) -> int:
        return sum(
            1
            for a in self._activities.values()
            if a.instance_id == instance_id and a.status is Status.RUNNING
        )
