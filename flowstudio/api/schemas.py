from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowstudio.service.graph import Graph

_VALID_ERROR_CODES = {
    "validation_error",
    "invalid_session",
    "not_found",
    "server_error",
}

# Maximum nested JSON depth accepted in free-form payloads
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SessionResponse(BaseModel):
    session_id: str


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., min_length=1, alias="session_id")
    graph: Graph
    input: Optional[Dict[str, Any]] = None
    wait: bool = True

    @field_validator("session_id", mode="before")
    @classmethod
    def _strip_session(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("input")
    @classmethod
    def _validate_input(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _validate_json_depth(value)
        return value


class RunResponse(BaseModel):
    ok: bool = True
    final_states: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    visit_order: List[str] = Field(default_factory=list)
    unreachable: List[str] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)


class RunAccepted(BaseModel):
    ok: bool = True
    accepted: bool = True


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = Field(..., pattern="^(system|user|assistant|tool)$")
    content: Optional[str] = ""


class PlannerRequest(BaseModel):
    session_id: Optional[str] = None
    node_id: str = Field(..., min_length=1)
    messages: List[ChatMessage] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)
    tools: Optional[List[str]] = None


class ToolInfo(BaseModel):
    name: str
    description: str
    parameters: Dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    event_channel: str
