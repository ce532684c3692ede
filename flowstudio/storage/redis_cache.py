from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

import redis.asyncio as aioredis

from flowstudio.logging import get_logger
from flowstudio.storage.common import (
    DEFAULT_SESSION_TTL_SECONDS,
    clamp_batch_size,
    queue_key,
    session_key,
)
from flowstudio.storage.models import Event

logger = get_logger(__name__)


class RedisEventChannel:
    """Event channel backed by a Redis list per session.

    The session marker key and the queue list share one TTL that is renewed on
    every enqueue, so a slow run keeps its session alive. Appends and batch
    removal run as Lua scripts, which makes each of them atomic with respect
    to concurrent producers and consumers.
    """

    backend = "redis"

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Append only while the session marker exists; renew both TTLs.
    _ENQUEUE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('RPUSH', KEYS[2], ARGV[1])
redis.call('EXPIRE', KEYS[1], ARGV[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
return 1
"""

    # Read and trim in one step so two readers never receive the same item.
    _DEQUEUE_SCRIPT = """
local limit = tonumber(ARGV[1])
local items = redis.call('LRANGE', KEYS[1], 0, limit - 1)
if #items > 0 then
  redis.call('LTRIM', KEYS[1], #items, -1)
end
return items
"""

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._enqueue = self.client.register_script(self._ENQUEUE_SCRIPT)
        self._dequeue = self.client.register_script(self._DEQUEUE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the remote channel."""
        from redis import Redis

        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def create_session(self) -> str:
        session_id = str(uuid4())
        created_at = datetime.now(timezone.utc).isoformat()
        await self.client.set(session_key(session_id), created_at, ex=self.ttl_seconds)
        logger.debug("event_session_created", session_id=session_id, backend=self.backend)
        return session_id

    async def has_session(self, session_id: str) -> bool:
        if not session_id:
            return False
        return bool(await self.client.exists(session_key(session_id)))

    async def enqueue(self, session_id: str, event: Event) -> None:
        if not session_id:
            return
        await self._enqueue(
            keys=[session_key(session_id), queue_key(session_id)],
            args=[event.to_json(), self.ttl_seconds],
        )

    async def dequeue_batch(self, session_id: str, max_events: int) -> List[Event]:
        limit = clamp_batch_size(max_events)
        if not session_id or limit == 0:
            return []
        raw_items = await self._dequeue(keys=[queue_key(session_id)], args=[limit])
        events: List[Event] = []
        for raw in raw_items or []:
            try:
                events.append(Event.from_json(raw))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                # Corrupted entry: already removed, skip it
                logger.warning(
                    "event_decode_failed", session_id=session_id, error=str(exc)
                )
        return events

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
