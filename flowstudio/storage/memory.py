from __future__ import annotations

import threading
import time
from typing import Dict, List

from flowstudio.logging import get_logger
from flowstudio.storage.common import DEFAULT_SESSION_TTL_SECONDS, clamp_batch_size
from flowstudio.storage.models import Event, Session, SessionQueue


DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


class MemoryEventChannel:
    """Process-local event channel.

    Assumes a single logical instance: producers and the stream reader must
    live in the same process. Expired sessions are pruned on access, and all of
    them are swept when a session is created (at most once per
    `sweep_interval_seconds`).
    """

    backend = "memory"

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.logger = get_logger(__name__)
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep = time.monotonic()
        self._queues: Dict[str, SessionQueue] = {}
        self._lock = threading.Lock()

    def _get_live(self, session_id: str) -> SessionQueue | None:
        # caller holds self._lock
        entry = self._queues.get(session_id)
        if entry is None:
            return None
        if entry.session.expired:
            self._queues.pop(session_id, None)
            self.logger.info(
                "event_session_expired",
                session_id=session_id,
                dropped_events=len(entry.events),
            )
            return None
        return entry

    def _sweep_expired(self) -> None:
        # caller holds self._lock
        expired = [sid for sid, entry in self._queues.items() if entry.session.expired]
        for session_id in expired:
            self._get_live(session_id)

    async def create_session(self) -> str:
        session = Session.new(self.ttl_seconds)
        with self._lock:
            now = time.monotonic()
            if now - self._last_sweep >= self.sweep_interval_seconds:
                self._last_sweep = now
                self._sweep_expired()
            self._queues[session.id] = SessionQueue(session=session)
        self.logger.debug("event_session_created", session_id=session.id)
        return session.id

    async def has_session(self, session_id: str) -> bool:
        if not session_id:
            return False
        with self._lock:
            return self._get_live(session_id) is not None

    async def enqueue(self, session_id: str, event: Event) -> None:
        with self._lock:
            entry = self._get_live(session_id)
            if entry is None:
                return
            entry.events.append(event)
            entry.session.touch(self.ttl_seconds)

    async def dequeue_batch(self, session_id: str, max_events: int) -> List[Event]:
        limit = clamp_batch_size(max_events)
        with self._lock:
            entry = self._get_live(session_id)
            if entry is None or limit == 0:
                return []
            batch: List[Event] = []
            while entry.events and len(batch) < limit:
                batch.append(entry.events.popleft())
            return batch

    async def close(self) -> None:
        with self._lock:
            self._queues.clear()

    def session_count(self) -> int:
        """Number of live sessions."""
        with self._lock:
            self._sweep_expired()
            return len(self._queues)
