"""
Redis cache for stage results.

Key format:  optimization_stage:{trip_id}:{stage}:{fingerprint}
Value:       JSON stage result (the stage's to_dict())
TTL:         settings.stage_cache_ttl_s (30 minutes by default)

The fingerprint is a sha256 over the canonical JSON of everything the stage
depends on (snapshot + settings + upstream result), so a change to any input
is a different key and no explicit invalidation is needed.

Graceful degradation: get() returns None and set() is a no-op when redis is
None or a command fails; the pipeline then just recomputes.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TTL_SECONDS = 30 * 60


def fingerprint(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _redis_key(trip_id: str, stage: str, digest: str) -> str:
    return f"optimization_stage:{trip_id}:{stage}:{digest}"


class StageCache:

    def __init__(self, redis: Any, ttl_seconds: int = _DEFAULT_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._redis is not None and self._ttl > 0

    async def get(self, trip_id: str, stage: str, digest: str) -> dict[str, Any] | None:
        if not self.enabled:
            return None
        key = _redis_key(trip_id, stage, digest)
        try:
            raw = await self._redis.get(key)
        except Exception:
            logger.warning("stage_cache get failed: key=%s", key, exc_info=True)
            return None
        if not raw:
            logger.debug("stage_cache miss: key=%s", key)
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("stage_cache: undecodable value at key=%s", key)
            return None
        logger.debug("stage_cache hit: key=%s", key)
        return value

    async def set(self, trip_id: str, stage: str, digest: str, value: dict[str, Any]) -> None:
        if not self.enabled:
            return
        key = _redis_key(trip_id, stage, digest)
        try:
            await self._redis.set(key, json.dumps(value), ex=self._ttl)
        except Exception:
            logger.warning("stage_cache set failed: key=%s", key, exc_info=True)
