"""Engine error hierarchy.

Hierarchy::

    StationflowError
      ├── ConfigurationError        ── graph or instance data missing/malformed
      │     ├── WorkflowNotFoundError
      │     └── NodeNotFoundError
      ├── ActionError               ── a node's action failed
      │     └── ExpressionError
      ├── DuplicateDelivery         ── activity already closed, ack and discard
      └── TransientBrokerError      ── publish failed after retries
"""

from __future__ import annotations

from typing import Optional


class StationflowError(Exception):
    """Base exception for all engine errors."""


class ConfigurationError(StationflowError):
    """Fatal for a single activation; never retried."""


class WorkflowNotFoundError(ConfigurationError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class NodeNotFoundError(ConfigurationError):
    def __init__(self, node_id: str, workflow_id: Optional[str] = None):
        self.node_id = node_id
        self.workflow_id = workflow_id
        scope = f" in workflow {workflow_id}" if workflow_id else ""
        super().__init__(f"Node not found{scope}: {node_id}")


class ActionError(StationflowError):
    """Raised when a node's action fails; closes the activity as failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ExpressionError(ActionError):
    """Raised when an input/output transform cannot be evaluated."""


class DuplicateDelivery(StationflowError):
    """Raised when an activity was already closed by an earlier delivery."""

    def __init__(self, activity_id: str):
        self.activity_id = activity_id
        super().__init__(f"Activity already closed: {activity_id}")


class TransientBrokerError(StationflowError):
    """Raised when a broker publish keeps failing after retries."""
