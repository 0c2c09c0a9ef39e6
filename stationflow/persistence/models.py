"""Data models for persisted instance and activity state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, JsonValue


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Status(str, Enum):
    """Lifecycle status shared by instances and activities."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not Status.RUNNING


class InstanceRecord(BaseModel):
    """One execution of a workflow graph."""

    id: str
    workflow_id: str
    status: Status = Status.RUNNING
    input: JsonValue = None
    output: JsonValue = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    parent_instance_id: Optional[str] = None
    parent_activity_id: Optional[str] = None
    pending_activations: int = 0


class ActivityRecord(BaseModel):
    """A single execution attempt of one node within one instance.

    ``seq`` is the creation order within the store.
    """

    id: str
    seq: int = 0
    instance_id: str
    workflow_id: str
    node_id: str
    status: Status = Status.RUNNING
    input: JsonValue = None
    output: JsonValue = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
