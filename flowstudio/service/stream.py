from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from flowstudio.logging import get_logger
from flowstudio.storage.common import EventChannel

logger = get_logger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DisconnectCheck = Callable[[], Awaitable[bool]]


def format_sse(payload: str) -> str:
    return f"data: {payload}\n\n"


class EventStreamer:
    """Drains a session's event channel into server-sent event frames.

    One reader per session. The stream ends right after a `done` event, when
    the client disconnects, when the session disappears, or after
    `max_idle_seconds` without any event.
    """

    def __init__(
        self,
        channel: EventChannel,
        *,
        poll_interval_ms: int = 200,
        keepalive_seconds: float = 15.0,
        batch_size: int = 100,
        max_idle_seconds: float = 300.0,
    ) -> None:
        self.channel = channel
        self.poll_interval = max(1, poll_interval_ms) / 1000.0
        self.keepalive_seconds = keepalive_seconds
        self.batch_size = batch_size
        self.max_idle_seconds = max_idle_seconds

    async def frames(
        self, session_id: str, is_disconnected: Optional[DisconnectCheck] = None
    ) -> AsyncIterator[str]:
        forwarded = 0
        last_event = time.monotonic()
        last_frame = last_event
        reason = "closed"
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    reason = "client_disconnected"
                    return

                batch = await self.channel.dequeue_batch(session_id, self.batch_size)
                now = time.monotonic()
                for event in batch:
                    yield format_sse(event.to_json())
                    forwarded += 1
                    if event.is_terminal:
                        reason = "done"
                        return
                if batch:
                    last_event = last_frame = now
                    continue

                if now - last_event >= self.max_idle_seconds:
                    reason = "idle_timeout"
                    return
                if not await self.channel.has_session(session_id):
                    reason = "session_expired"
                    return
                if now - last_frame >= self.keepalive_seconds:
                    last_frame = now
                    yield KEEPALIVE_FRAME
                await asyncio.sleep(self.poll_interval)
        finally:
            logger.info(
                "event_stream_closed",
                session_id=session_id,
                reason=reason,
                forwarded=forwarded,
            )
