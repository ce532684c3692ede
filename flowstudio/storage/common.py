"""Event channel contract shared by the in-process and Redis backends.

Both backends give the same guarantees: per-session FIFO order, silent
no-op writes for unknown or expired sessions, and atomic batch removal so an
event is handed out at most once.
"""

from __future__ import annotations

from typing import List, Protocol, runtime_checkable

from flowstudio.storage.models import Event

DEFAULT_SESSION_TTL_SECONDS = 3600
MAX_DEQUEUE_BATCH = 1000


@runtime_checkable
class EventChannel(Protocol):
    """Per-session ordered queue of execution events."""

    backend: str

    async def create_session(self) -> str: ...

    async def has_session(self, session_id: str) -> bool: ...

    async def enqueue(self, session_id: str, event: Event) -> None: ...

    async def dequeue_batch(self, session_id: str, max_events: int) -> List[Event]: ...

    async def close(self) -> None: ...


def clamp_batch_size(max_events: int) -> int:
    """Normalize a requested batch size into [0, MAX_DEQUEUE_BATCH]."""
    if max_events <= 0:
        return 0
    return min(max_events, MAX_DEQUEUE_BATCH)


def session_key(session_id: str) -> str:
    return f"flow:session:{session_id}"


def queue_key(session_id: str) -> str:
    return f"flow:queue:{session_id}"
