"""Redis-backed channel tests; skipped when no Redis server is reachable."""

import os
import uuid

import pytest
import redis

from flowstudio.storage.common import queue_key, session_key
from flowstudio.storage.models import Event
from flowstudio.storage.redis_cache import RedisEventChannel

REDIS_URL = os.getenv("REDIS_URL") or "redis://localhost:6379/15"


def _redis_available() -> bool:
    client = redis.Redis.from_url(REDIS_URL, socket_connect_timeout=0.5, socket_timeout=0.5)
    try:
        return bool(client.ping())
    except redis.RedisError:
        return False
    finally:
        client.close()


pytestmark = pytest.mark.skipif(not _redis_available(), reason="Redis not reachable")


@pytest.mark.asyncio
async def test_redis_round_trip_is_fifo_and_at_most_once():
    channel = RedisEventChannel(REDIS_URL, ttl_seconds=60)
    try:
        session_id = await channel.create_session()
        events = [Event.node_enter(f"n{i}", "x ") for i in range(5)] + [Event.done({"tokens": 0})]
        for event in events:
            await channel.enqueue(session_id, event)

        first = await channel.dequeue_batch(session_id, 4)
        rest = await channel.dequeue_batch(session_id, 4)

        assert first + rest == events
        assert await channel.dequeue_batch(session_id, 4) == []
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_redis_unknown_session_is_noop():
    channel = RedisEventChannel(REDIS_URL, ttl_seconds=60)
    try:
        ghost = f"ghost-{uuid.uuid4()}"
        await channel.enqueue(ghost, Event.done({}))

        assert not await channel.has_session(ghost)
        assert not await channel.client.exists(queue_key(ghost))
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_redis_enqueue_renews_ttl():
    channel = RedisEventChannel(REDIS_URL, ttl_seconds=120)
    try:
        session_id = await channel.create_session()
        await channel.client.expire(session_key(session_id), 5)

        await channel.enqueue(session_id, Event.node_enter("a", "a "))

        assert await channel.client.ttl(session_key(session_id)) > 5
        assert await channel.client.ttl(queue_key(session_id)) > 5
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_redis_skips_corrupted_entries():
    channel = RedisEventChannel(REDIS_URL, ttl_seconds=60)
    try:
        session_id = await channel.create_session()
        await channel.client.rpush(queue_key(session_id), "not json")
        await channel.enqueue(session_id, Event.done({}))

        batch = await channel.dequeue_batch(session_id, 10)

        assert batch == [Event.done({})]
    finally:
        await channel.close()
