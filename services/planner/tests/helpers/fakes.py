"""
In-memory stand-ins for Redis and asyncpg used across the planner tests.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock


class FakeRedis:
    """
    Minimal dict-backed Redis fake implementing the operations used by
    StageCache and RedisProgressStore: get, set (with ex), delete, ping.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.expiries: dict[str, int | None] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._store[key] = value
        self.expiries[key] = ex

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)
        self.expiries.pop(key, None)

    async def ping(self) -> bool:
        return True

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return sorted(k for k in self._store if k.startswith(prefix))


def make_conn(fetchrow: Any = None, fetch: list | None = None) -> MagicMock:
    """
    Mock asyncpg connection.

    Args:
        fetchrow: return value of conn.fetchrow
        fetch:    list of return values, one per conn.fetch call
    """
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=fetchrow)
    conn.fetch = AsyncMock(side_effect=list(fetch or []))
    conn.execute = AsyncMock(return_value=None)
    conn.executemany = AsyncMock(return_value=None)

    txn = AsyncMock()
    txn.__aenter__ = AsyncMock(return_value=txn)
    txn.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=txn)
    return conn


def make_pool(conn: MagicMock) -> MagicMock:
    """Wrap a mock connection in a mock pool (pool.acquire() as conn)."""
    pool = AsyncMock()
    acquire_ctx = AsyncMock()
    acquire_ctx.__aenter__ = AsyncMock(return_value=conn)
    acquire_ctx.__aexit__ = AsyncMock(return_value=False)
    pool.acquire = MagicMock(return_value=acquire_ctx)
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetch = AsyncMock(return_value=[])
    return pool
