"""Notifications emitted when activities and instances change state."""

from __future__ import annotations

import logging
from typing import List, Protocol, Union

from .persistence import ActivityRecord, InstanceRecord

logger = logging.getLogger(__name__)


class EngineEvents(Protocol):
    """Receiver for state changes, called after the change is committed."""

    def activity_updated(self, activity: ActivityRecord) -> None:
        """An activity was created, suspended or closed."""

    def instance_updated(self, instance: InstanceRecord) -> None:
        """An instance reached a terminal status."""


class LoggingEvents:
    """Default sink that writes every change to the log."""

    def activity_updated(self, activity: ActivityRecord) -> None:
        logger.info(
            f"Activity {activity.id} ({activity.node_id}) of instance "
            f"{activity.instance_id} is {activity.status.value}"
        )

    def instance_updated(self, instance: InstanceRecord) -> None:
        suffix = f": {instance.error}" if instance.error else ""
        logger.info(f"Instance {instance.id} is {instance.status.value}{suffix}")


class RecordingEvents(LoggingEvents):
    """Keeps every emitted record, in order; useful for tests and tooling."""

    def __init__(self) -> None:
        self.records: List[Union[ActivityRecord, InstanceRecord]] = []

    def activity_updated(self, activity: ActivityRecord) -> None:
        super().activity_updated(activity)
        self.records.append(activity)

    def instance_updated(self, instance: InstanceRecord) -> None:
        super().instance_updated(instance)
        self.records.append(instance)

    @property
    def activities(self) -> List[ActivityRecord]:
        return [r for r in self.records if isinstance(r, ActivityRecord)]

    @property
    def instances(self) -> List[InstanceRecord]:
        return [r for r in self.records if isinstance(r, InstanceRecord)]
