"""Wire contracts for messages exchanged over the brokers.

Bodies are camelCase JSON so that existing deployments can interoperate:

* activation: ``{activationId, instanceId, nodeId, input, timestamp}``
* timer: ``{instanceId, nodeId, workflowId, dueAt, activityId}``

Timestamps are epoch milliseconds.
"""

from __future__ import annotations

import time
import uuid
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, JsonValue

MessageT = TypeVar("MessageT", bound="WireMessage")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class WireMessage(BaseModel):
    """Base envelope serialized with camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls: Type[MessageT], data: str | bytes) -> MessageT:
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    @property
    def partition_key(self) -> Optional[str]:
        """Key used by partitioned transports to keep related messages together."""
        return None


class ActivationMessage(WireMessage):
    """Request to execute ``node_id`` within ``instance_id``.

    ``activation_id`` names the reservation counted on the instance; a
    redelivered message carries the same id and is consumed only once.
    """

    activation_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), alias="activationId"
    )
    instance_id: str = Field(alias="instanceId")
    node_id: str = Field(alias="nodeId")
    input: JsonValue = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms)

    @property
    def partition_key(self) -> Optional[str]:
        return self.instance_id


class TimerMessage(WireMessage):
    """Wake-up for the running activity of a timer (or nested workflow) node."""

    instance_id: str = Field(alias="instanceId")
    node_id: str = Field(alias="nodeId")
    workflow_id: str = Field(alias="workflowId")
    due_at: int = Field(alias="dueAt")
    activity_id: str = Field(alias="activityId")

    @property
    def partition_key(self) -> Optional[str]:
        return self.instance_id
