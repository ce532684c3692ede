"""Graph model and topological scheduling.

Client graphs arrive either flat (`{id, kind, toolName, params, ...}`) or in
the canvas shape (`{id, type, data: {label, tool, params, ...}}`). Both are
normalized into immutable `NodeConfig` records; runtime state lives elsewhere.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

KIND_LLM = "llm"
KIND_TOOL = "tool"
KIND_PLAIN = "plain"
KIND_ROUTER = "router"
KIND_INPUT = "input"
KIND_OUTPUT = "output"

_CANVAS_KINDS = {KIND_INPUT, KIND_OUTPUT, KIND_ROUTER, KIND_LLM, KIND_TOOL}


class NodeConfig(BaseModel):
    """Immutable per-node configuration fixed at submission time."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    kind: str = KIND_PLAIN
    tool_name: Optional[str] = Field(default=None, alias="toolName")
    params: Dict[str, Any] = Field(default_factory=dict)
    label: str = ""
    subtitle: str = ""
    state: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _flatten_canvas_node(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        raw = dict(value)
        data = raw.pop("data", None)
        if isinstance(data, dict):
            for key in ("label", "subtitle", "params", "state", "kind"):
                if key in data and key not in raw:
                    raw[key] = data[key]
            tool = data.get("toolName") or data.get("tool")
            if tool and not (raw.get("toolName") or raw.get("tool_name")):
                raw["toolName"] = tool
        if raw.get("tool") and not (raw.get("toolName") or raw.get("tool_name")):
            raw["toolName"] = raw.pop("tool")
        raw["label"] = str(raw.get("label") or "")
        raw["subtitle"] = str(raw.get("subtitle") or "")
        if raw.get("params") is None:
            raw["params"] = {}
        if raw.get("state") is None:
            raw["state"] = {}
        if not raw.get("kind"):
            raw["kind"] = _infer_kind(raw)
        raw["kind"] = str(raw["kind"]).lower()
        return raw

    @model_validator(mode="after")
    def _require_tool_name(self) -> "NodeConfig":
        if self.kind == KIND_TOOL and not self.tool_name:
            raise ValueError(f"tool node {self.id} is missing a tool name")
        return self

    @property
    def display_message(self) -> str:
        return f"{self.label} {self.subtitle}"


def _infer_kind(raw: Dict[str, Any]) -> str:
    if raw["label"].strip().lower() == KIND_LLM:
        return KIND_LLM
    if raw.get("toolName") or raw.get("tool_name"):
        return KIND_TOOL
    canvas_type = str(raw.get("type") or "").lower()
    if canvas_type in _CANVAS_KINDS:
        return canvas_type
    return KIND_PLAIN


class EdgeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")


class Graph(BaseModel):
    """A submitted node/edge graph. Not assumed to be acyclic."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    nodes: List[NodeConfig] = Field(default_factory=list)
    edges: List[EdgeConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "Graph":
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"duplicate node id {node.id}")
            seen.add(node.id)
        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in seen:
                    raise ValueError(f"edge references unknown node {end}")
        return self

    def node_map(self) -> Dict[str, NodeConfig]:
        return {node.id: node for node in self.nodes}

    def predecessors(self, node_id: str) -> List[str]:
        return [edge.source for edge in self.edges if edge.target == node_id]

    def successors(self, node_id: str) -> List[str]:
        return [edge.target for edge in self.edges if edge.source == node_id]

    def neighbors(self, node_id: str) -> List[str]:
        """Predecessors then successors, each once, in edge order."""
        ordered: List[str] = []
        for nid in self.predecessors(node_id) + self.successors(node_id):
            if nid not in ordered:
                ordered.append(nid)
        return ordered


@dataclass(frozen=True)
class ExecutionPlan:
    visit_order: Tuple[str, ...]
    unreachable: Tuple[str, ...]

    @property
    def has_cycle(self) -> bool:
        return bool(self.unreachable)


def compute_order(graph: Graph) -> ExecutionPlan:
    """Kahn's algorithm with a FIFO frontier.

    Ties are broken by node insertion order, then by edge order for nodes
    admitted later. Nodes that sit in a cycle, or depend on one, never reach
    in-degree zero and are reported as unreachable in insertion order.
    """
    in_degree: Dict[str, int] = {node.id: 0 for node in graph.nodes}
    adjacency: Dict[str, List[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        in_degree[edge.target] += 1
        adjacency[edge.source].append(edge.target)

    frontier = deque(node.id for node in graph.nodes if in_degree[node.id] == 0)
    visit_order: List[str] = []
    while frontier:
        node_id = frontier.popleft()
        visit_order.append(node_id)
        for target in adjacency[node_id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                frontier.append(target)

    admitted = set(visit_order)
    unreachable = [node.id for node in graph.nodes if node.id not in admitted]
    return ExecutionPlan(visit_order=tuple(visit_order), unreachable=tuple(unreachable))
