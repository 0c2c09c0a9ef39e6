"""Terminal transitions of workflow instances."""

from __future__ import annotations

import logging
from typing import Optional

from .persistence import InstanceRecord, Status, WorkflowRepository
from .state import InstanceStateAggregator

logger = logging.getLogger(__name__)


class InstanceLifecycle:
    """Closes instances once nothing is left to run.

    Both transitions are conditional on the instance still running, so
    concurrent callers settle or fail an instance at most once. Resuming a
    waiting parent is left to :class:`~stationflow.continuation.Continuation`,
    which owns the path back into the parent's graph.
    """

    def __init__(
        self, repository: WorkflowRepository, aggregator: InstanceStateAggregator
    ) -> None:
        self._repository = repository
        self._aggregator = aggregator

    async def is_quiescent(self, instance: InstanceRecord) -> bool:
        """True when no activation is queued and no activity is running."""
        if instance.pending_activations > 0:
            return False
        return await self._repository.count_running_activities(instance.id) == 0

    async def settle(self, instance_id: str) -> Optional[InstanceRecord]:
        """Mark the instance successful if it has nothing left to do.

        The output is the final instance state. Returns the finished record,
        or ``None`` when the instance keeps running or was already terminal.
        """
        async with self._repository.transaction():
            await self._repository.lock_instance(instance_id)
            instance = await self._repository.get_instance(instance_id)
            if instance is None or instance.status is not Status.RUNNING:
                return None
            if not await self.is_quiescent(instance):
                logger.debug(
                    f"Instance {instance_id} still has {instance.pending_activations} "
                    "pending activation(s) or running activities"
                )
                return None
            state = await self._aggregator.compute(instance_id)
            if not await self._repository.finish_instance(
                instance_id, Status.SUCCESS, output=state
            ):
                return None
            return await self._repository.get_instance(instance_id)

    async def fail(self, instance_id: str, error: str) -> Optional[InstanceRecord]:
        """Mark the instance failed; ``None`` if it was no longer running."""
        async with self._repository.transaction():
            if not await self._repository.finish_instance(
                instance_id, Status.FAILED, error=error
            ):
                return None
            return await self._repository.get_instance(instance_id)
