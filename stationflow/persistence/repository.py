"""Repository abstraction for graph, instance and activity persistence."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

from pydantic import JsonValue

from ..models import Edge, Node, Workflow
from .models import ActivityRecord, InstanceRecord, Status


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Every method is atomic on its own. ``transaction()`` groups calls made
    by the same task into one atomic unit; nested use joins the outer one.
    Conditional transitions (``close_activity``, ``finish_instance``) only
    act on rows that are still running and report whether they did.
    """

    def transaction(self) -> AsyncContextManager[None]:
        """Group subsequent calls from this task into one atomic unit."""

    async def close(self) -> None:
        """Release connections held by the backend."""

    # graph ------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        """Persist a complete workflow graph, replacing a previous copy."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow with its nodes and edges."""

    async def get_node(self, node_id: str) -> Node | None:
        """Retrieve a node by id."""

    async def list_outbound_edges(self, node_id: str) -> list[Edge]:
        """Edges leaving ``node_id`` in import order."""

    async def list_inbound_edges(self, node_id: str) -> list[Edge]:
        """Edges entering ``node_id`` in import order."""

    # instances --------------------------------------------------------
    async def create_instance(
        self,
        workflow_id: str,
        input: JsonValue = None,
        parent_instance_id: Optional[str] = None,
        parent_activity_id: Optional[str] = None,
    ) -> InstanceRecord:
        """Persist a new running instance."""

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        """Retrieve the instance by id."""

    async def list_instances(
        self, workflow_id: Optional[str] = None
    ) -> list[InstanceRecord]:
        """Return persisted instances, newest first."""

    async def finish_instance(
        self,
        instance_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move a running instance to a terminal status."""

    async def reserve_activation(self, instance_id: str, activation_id: str) -> None:
        """Record an activation in flight and count it on the instance."""

    async def release_activation(self, instance_id: str, activation_id: str) -> bool:
        """Consume the reservation of ``activation_id`` exactly once.

        Returns ``False`` when it was already released, e.g. for a redelivered
        message; the pending counter is then left untouched.
        """

    async def lock_instance(self, instance_id: str) -> None:
        """Lock the instance row until the current transaction ends."""

    # activities -------------------------------------------------------
    async def create_activity(
        self, instance_id: str, workflow_id: str, node_id: str, input: JsonValue = None
    ) -> ActivityRecord:
        """Persist a running activity."""

    async def record_activity_output(self, activity_id: str, output: JsonValue) -> None:
        """Store output on a still running activity."""

    async def close_activity(
        self,
        activity_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move a running activity to a terminal status. ``None`` keeps the output."""

    async def get_activity(self, activity_id: str) -> ActivityRecord | None:
        """Retrieve the activity by id."""

    async def list_activities(self, instance_id: str) -> list[ActivityRecord]:
        """Activities of an instance in creation order."""

    async def find_running_activity(
        self, instance_id: str, node_id: str
    ) -> ActivityRecord | None:
        """Latest running activity of ``node_id`` within the instance."""

    async def count_running_activities(self, instance_id: str) -> int:
        """Number of activities still running for the instance."""


class SerializedTransactions:
    """Serialize backend access behind one asyncio lock.

    A transaction holds the lock until it commits or rolls back; calls made
    inside it by the same task skip the lock. Subclasses implement
    ``_begin``, ``_commit`` and ``_rollback``.
    """

    def _init_serialization(self) -> None:
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"stationflow_tx_{id(self)}", default=False
        )

    async def _begin(self) -> None:
        pass

    async def _commit(self) -> None:
        pass

    async def _rollback(self) -> None:
        pass

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
        else:
            async with self._lock:
                yield

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return
        async with self._lock:
            token = self._in_transaction.set(True)
            try:
                await self._begin()
                try:
                    yield
                except BaseException:
                    await self._rollback()
                    raise
                await self._commit()
            finally:
                self._in_transaction.reset(token)
