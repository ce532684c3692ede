from __future__ import annotations

import json
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, Optional

from flowstudio.logging import get_logger

logger = get_logger(__name__)

EVENT_NODE_ENTER = "node_enter"
EVENT_STATE_PATCH = "state_patch"
EVENT_DONE = "done"
EVENT_ERROR = "error"

EVENT_TYPES = frozenset({EVENT_NODE_ENTER, EVENT_STATE_PATCH, EVENT_DONE, EVENT_ERROR})

UNENCODABLE_EVENT_MESSAGE = "event payload could not be encoded"


@dataclass
class Event:
    """One entry on a session's event channel.

    `node` is omitted for session-level events. Only the payload field that
    matches `type` is set: `message` for node_enter, `patch` for state_patch,
    `metrics` for done; session-level errors carry `message` and `detail`.
    """

    type: str
    node: Optional[str] = None
    message: Optional[str] = None
    patch: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None
    detail: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"unknown event type {self.type}")

    @classmethod
    def node_enter(cls, node_id: str, message: str) -> "Event":
        return cls(type=EVENT_NODE_ENTER, node=node_id, message=message)

    @classmethod
    def state_patch(cls, node_id: str, patch: Dict[str, Any]) -> "Event":
        return cls(type=EVENT_STATE_PATCH, node=node_id, patch=dict(patch))

    @classmethod
    def done(cls, metrics: Dict[str, Any]) -> "Event":
        return cls(type=EVENT_DONE, metrics=dict(metrics))

    @classmethod
    def error(
        cls, message: str, *, node_id: Optional[str] = None, detail: Optional[dict] = None
    ) -> "Event":
        return cls(type=EVENT_ERROR, node=node_id, message=message, detail=detail)

    @property
    def is_terminal(self) -> bool:
        return self.type == EVENT_DONE

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    def to_json(self) -> str:
        """Serialize for the wire.

        A payload that cannot be encoded is replaced by a placeholder of the
        same shape: `done` stays `done`, anything else becomes a node error.
        """
        try:
            return json.dumps(self.to_dict(), default=str)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.warning(
                "event_encode_failed", event_type=self.type, node_id=self.node, error=str(exc)
            )
        if self.type == EVENT_DONE:
            placeholder = Event.done({})
        else:
            placeholder = Event.error(UNENCODABLE_EVENT_MESSAGE, node_id=self.node)
        return json.dumps(placeholder.to_dict())

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Event":
        return cls(
            type=payload["type"],
            node=payload.get("node"),
            message=payload.get("message"),
            patch=payload.get("patch"),
            metrics=payload.get("metrics"),
            detail=payload.get("detail"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "Event":
        return cls.from_dict(json.loads(raw))


@dataclass
class Session:
    id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, ttl_seconds: int) -> "Session":
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def touch(self, ttl_seconds: int) -> None:
        self.expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


@dataclass
class SessionQueue:
    session: Session
    events: Deque[Event] = field(default_factory=deque)
