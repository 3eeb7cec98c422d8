"""
Tests for the Redis progress mirror.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from services.planner.realtime.progress import STAGE_ROUTING, ProgressEvent
from services.planner.realtime.progress_store import RedisProgressStore
from services.planner.tests.helpers.fakes import FakeRedis

EVENT = ProgressEvent(
    trip_id="trip-1",
    run_id="run-1",
    stage=STAGE_ROUTING,
    progress=80,
    message="Routed day 2 of 3",
    timestamp=datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc),
)


class TestRedisProgressStore:

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        redis = FakeRedis()
        store = RedisProgressStore(redis, ttl_seconds=120)
        await store.save(EVENT)

        assert await store.load("trip-1") == EVENT
        assert redis.expiries["optimization_progress:trip-1"] == 120

    @pytest.mark.asyncio
    async def test_last_writer_wins(self):
        store = RedisProgressStore(FakeRedis())
        await store.save(EVENT)
        later = ProgressEvent("trip-1", "run-2", STAGE_ROUTING, 10, "new run", EVENT.timestamp)
        await store.save(later)
        assert (await store.load("trip-1")).run_id == "run-2"

    @pytest.mark.asyncio
    async def test_clear(self):
        store = RedisProgressStore(FakeRedis())
        await store.save(EVENT)
        await store.clear("trip-1")
        assert await store.load("trip-1") is None

    @pytest.mark.asyncio
    async def test_none_redis_is_noop(self):
        store = RedisProgressStore(None)
        await store.save(EVENT)
        await store.clear("trip-1")
        assert await store.load("trip-1") is None

    @pytest.mark.asyncio
    async def test_redis_failure_degrades(self):
        redis = AsyncMock()
        redis.set.side_effect = ConnectionError("down")
        redis.get.side_effect = ConnectionError("down")
        store = RedisProgressStore(redis)
        await store.save(EVENT)
        assert await store.load("trip-1") is None

    @pytest.mark.asyncio
    async def test_corrupt_value_ignored(self):
        redis = FakeRedis()
        await redis.set("optimization_progress:trip-1", json.dumps({"stage": "routing"}))
        assert await RedisProgressStore(redis).load("trip-1") is None
