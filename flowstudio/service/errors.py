from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Subclasses define an HTTP status_code and a stable error_code. Framework
    errors (request validation, unknown routes, crashes) are mapped to the same
    codes by the API error handlers.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidSessionError(ServiceError):
    """Session id is unknown or expired (400)."""
    status_code = 400
    error_code = "invalid_session"


# ---------------------------------------------------------------------------
# Execution errors. These are absorbed at the node boundary and published as
# `error` patches; they never escape the dispatch loop.
# ---------------------------------------------------------------------------


class ToolExecutionError(Exception):
    """A registered tool rejected its input or failed deterministically."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.message = message


class ExternalStepTimeout(Exception):
    """The long-running planner step did not finish within its bound."""

    def __init__(self, node_id: str, timeout_seconds: float) -> None:
        super().__init__(f"planner step timed out after {timeout_seconds:g}s")
        self.node_id = node_id
        self.timeout_seconds = timeout_seconds


class ExternalStepFailure(Exception):
    """Planning, tool execution or streaming failed inside the planner step."""

    def __init__(self, node_id: str, message: str) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.message = message


@dataclass(frozen=True)
class UnknownTool:
    """Result returned by the registry for a name it does not know."""

    name: str

    @property
    def message(self) -> str:
        return f"Unknown tool {self.name}"

    def to_result(self) -> dict:
        return {"error": self.message}


@dataclass(frozen=True)
class GraphCycle:
    """Structural warning: nodes the scheduler could never admit."""

    nodes: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"graph contains a cycle; unreachable nodes: {', '.join(self.nodes)}"


__all__ = [
    "ServiceError",
    "InvalidSessionError",
    "ToolExecutionError",
    "ExternalStepTimeout",
    "ExternalStepFailure",
    "UnknownTool",
    "GraphCycle",
]
