from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PLANNING = "planning"
    TOOL_CALLING = "tool_calling"
    TOOL_RESULTS = "tool_results"
    GENERATING = "generating"
    ANSWERING = "answering"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


TERMINAL_STATUSES: FrozenSet[NodeStatus] = frozenset(
    {NodeStatus.DONE, NodeStatus.ERROR, NodeStatus.SKIPPED}
)

_STREAMING = {NodeStatus.GENERATING, NodeStatus.ANSWERING}
_FINISH = {NodeStatus.DONE, NodeStatus.ERROR}

# Allowed forward moves. Repeating a streaming status is how partial text grows.
_TRANSITIONS: Dict[NodeStatus, FrozenSet[NodeStatus]] = {
    NodeStatus.PENDING: frozenset(
        {NodeStatus.RUNNING, NodeStatus.PLANNING, NodeStatus.SKIPPED} | _FINISH
    ),
    NodeStatus.RUNNING: frozenset(_FINISH),
    NodeStatus.PLANNING: frozenset(
        {NodeStatus.TOOL_CALLING} | _STREAMING | _FINISH
    ),
    NodeStatus.TOOL_CALLING: frozenset({NodeStatus.TOOL_RESULTS} | _FINISH),
    NodeStatus.TOOL_RESULTS: frozenset(_STREAMING | _FINISH),
    NodeStatus.GENERATING: frozenset(_STREAMING | _FINISH),
    NodeStatus.ANSWERING: frozenset(_STREAMING | _FINISH),
    NodeStatus.DONE: frozenset(),
    NodeStatus.ERROR: frozenset(),
    NodeStatus.SKIPPED: frozenset(),
}


def can_transition(current: NodeStatus, target: NodeStatus) -> bool:
    return target in _TRANSITIONS[current]


@dataclass
class NodeRuntimeState:
    """Mutable execution state of one node for the duration of a run.

    `data` starts from the node's submitted state (plus run input for input
    nodes) and accumulates every accepted patch. `last_patch` is the final
    state reported for the node once the run ends.
    """

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    data: Dict[str, Any] = field(default_factory=dict)
    last_patch: Optional[Dict[str, Any]] = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def apply(self, patch: Mapping[str, Any]) -> bool:
        """Merge `patch` if its status is a legal next step.

        Patches without a status merge data only, and only while the node is
        still live. Returns False when the patch was rejected.
        """
        raw_status = patch.get("status")
        if raw_status is None:
            if self.finished:
                return False
            self.data.update(patch)
            return True
        try:
            target = NodeStatus(raw_status)
        except ValueError:
            return False
        if not can_transition(self.status, target):
            return False
        self.status = target
        self.data.update(patch)
        self.last_patch = dict(patch)
        return True
