"""
Redis mirror of the latest progress event per trip.

Key format:  optimization_progress:{trip_id}
Value:       JSON ProgressEvent.to_dict()
TTL:         settings.progress_ttl_s

Last-writer-wins: a plain SET with EX. The broker only hands events from the
trip's current run to this store, so a superseded run never overwrites the
key once the new run has started publishing.

Lets a process that did not run the optimization (another API worker) answer
"where is trip X?" without the in-process broker.

Graceful degradation: all operations are no-ops / return None when redis
is None or a command fails.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from services.planner.realtime.progress import ProgressEvent

logger = logging.getLogger(__name__)

_DEFAULT_TTL_SECONDS = 60 * 60


def _redis_key(trip_id: str) -> str:
    return f"optimization_progress:{trip_id}"


class RedisProgressStore:

    def __init__(self, redis: Any, ttl_seconds: int = _DEFAULT_TTL_SECONDS) -> None:
        """
        Args:
            redis: An async Redis client (redis.asyncio compatible).
                   May be None; all operations degrade gracefully.
        """
        self._redis = redis
        self._ttl = ttl_seconds

    async def save(self, event: ProgressEvent) -> None:
        if self._redis is None:
            return
        key = _redis_key(event.trip_id)
        try:
            await self._redis.set(key, json.dumps(event.to_dict()), ex=self._ttl or None)
        except Exception:
            logger.warning("progress_store save failed: key=%s", key, exc_info=True)

    async def load(self, trip_id: str) -> ProgressEvent | None:
        if self._redis is None:
            return None
        key = _redis_key(trip_id)
        try:
            raw = await self._redis.get(key)
        except Exception:
            logger.warning("progress_store load failed: key=%s", key, exc_info=True)
            return None
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return ProgressEvent.from_dict(json.loads(raw))
        except (ValueError, KeyError):
            logger.warning("progress_store: undecodable event at key=%s", key)
            return None

    async def clear(self, trip_id: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.delete(_redis_key(trip_id))
        except Exception:
            logger.warning("progress_store clear failed: trip=%s", trip_id, exc_info=True)
