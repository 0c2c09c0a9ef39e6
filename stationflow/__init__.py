"""stationflow: Durable workflow orchestration over message brokers."""

from .conditions import ConditionEvaluator
from .contracts import ActivationMessage, TimerMessage
from .dispatch import InstanceLauncher
from .engine import WorkflowEngine, build_engine
from .errors import (
    ActionError,
    ConfigurationError,
    DuplicateDelivery,
    ExpressionError,
    NodeNotFoundError,
    StationflowError,
    TransientBrokerError,
    WorkflowNotFoundError,
)
from .execute import ActivityDispatcher, DispatchOutcome, DispatchStatus
from .models import Edge, EdgeKind, Node, NodeKind, Workflow
from .persistence import ActivityRecord, InstanceRecord, Status, get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionError",
    "ActivationMessage",
    "ActivityDispatcher",
    "ActivityRecord",
    "ConditionEvaluator",
    "ConfigurationError",
    "DispatchOutcome",
    "DispatchStatus",
    "DuplicateDelivery",
    "Edge",
    "EdgeKind",
    "ExpressionError",
    "InstanceLauncher",
    "InstanceRecord",
    "Node",
    "NodeKind",
    "NodeNotFoundError",
    "StationflowError",
    "Status",
    "TimerMessage",
    "TransientBrokerError",
    "Workflow",
    "WorkflowEngine",
    "WorkflowNotFoundError",
    "build_engine",
    "get_repository",
    "get_transport",
]
