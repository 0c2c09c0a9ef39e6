"""Workflow graph models: workflows, nodes and edges."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, JsonValue, model_validator


class NodeKind(str, Enum):
    HTTP = "http"
    HOOK = "hook"
    TIMER = "timer"
    JOIN = "join"
    NOOP = "noop"
    WORKFLOW = "workflow"


class EdgeKind(str, Enum):
    NORMAL = "normal"
    IF = "if"
    LOOP = "loop"


class HttpConfig(BaseModel):
    """Outbound HTTP call. ``url`` and ``body`` may come from the node input.

    Without ``timeout_ms`` the engine-wide HTTP timeout applies (15 s by default).
    """

    kind: Literal["http"] = "http"
    url: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[JsonValue] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class HookConfig(BaseModel):
    kind: Literal["hook"] = "hook"


class TimerConfig(BaseModel):
    kind: Literal["timer"] = "timer"
    delay_ms: int = Field(
        default=1000, ge=0, validation_alias=AliasChoices("delay_ms", "ms")
    )


class JoinConfig(BaseModel):
    """Prerequisite predicates; all must hold for the join to be admitted."""

    kind: Literal["join"] = "join"
    conditions: List[str] = Field(default_factory=list)


class NoopConfig(BaseModel):
    kind: Literal["noop"] = "noop"


class WorkflowConfig(BaseModel):
    """Runs another workflow as a child instance and waits for it."""

    kind: Literal["workflow"] = "workflow"
    workflow_id: str
    timeout_ms: Optional[int] = Field(default=None, gt=0)


NodeConfig = Annotated[
    Union[HttpConfig, HookConfig, TimerConfig, JoinConfig, NoopConfig, WorkflowConfig],
    Field(discriminator="kind"),
]


class Node(BaseModel):
    """A typed step of a workflow graph."""

    id: str
    workflow_id: str = ""
    label: str = ""
    config: NodeConfig
    input_expression: Optional[str] = None
    output_expression: Optional[str] = None

    @property
    def kind(self) -> NodeKind:
        return NodeKind(self.config.kind)


class Edge(BaseModel):
    """Directed connection between two nodes of the same workflow."""

    source_id: str
    target_id: str
    kind: EdgeKind = EdgeKind.NORMAL
    condition: Optional[str] = None
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class Workflow(BaseModel):
    """A workflow graph. Edge order is the import order."""

    id: str
    name: str = ""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_graph(self) -> "Workflow":
        node_ids = set()
        for node in self.nodes:
            if node.id in node_ids:
                raise ValueError(f"duplicate node id: {node.id}")
            node_ids.add(node.id)
            if not node.workflow_id:
                node.workflow_id = self.id
            elif node.workflow_id != self.id:
                raise ValueError(
                    f"node {node.id} belongs to workflow {node.workflow_id}, not {self.id}"
                )
        for edge in self.edges:
            if edge.source_id not in node_ids or edge.target_id not in node_ids:
                raise ValueError(
                    f"edge {edge.source_id} -> {edge.target_id} references a node outside workflow {self.id}"
                )
        return self

    def node(self, node_id: str) -> Optional[Node]:
        return next((n for n in self.nodes if n.id == node_id), None)
