"""Key/value stores backing the indicator cache.

``RedisStore`` persists across restarts; ``MemoryStore`` is used in tests
and as the fallback when Redis is unreachable at startup. Both store raw
bytes; serialization is the caller's job (orjson).
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from typing import Protocol

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal async byte store. Implementations never raise on I/O errors."""

    async def get(self, key: str) -> bytes | None: ...

    async def mget(self, keys: list[str]) -> list[bytes | None]: ...

    async def set(self, key: str, value: bytes) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def scan(self, pattern: str) -> list[str]: ...


# =============================================================================
# Redis
# =============================================================================


class RedisStore:
    """redis.asyncio store. Errors are logged and treated as misses."""

    def __init__(self, url: str, max_connections: int = 20):
        self.url = url
        self._pool = ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,  # values are orjson bytes
        )
        self._client = redis.Redis(connection_pool=self._pool)

    async def ping(self) -> bool:
        """Check connectivity."""
        try:
            return bool(await self._client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}")
            return False

    async def close(self) -> None:
        """Close the client and its connection pool."""
        await self._client.aclose()
        await self._pool.disconnect()
        logger.info("Redis connection closed")

    async def get(self, key: str) -> bytes | None:
        try:
            return await self._client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET error: {e}")
            return None

    async def mget(self, keys: list[str]) -> list[bytes | None]:
        if not keys:
            return []
        try:
            return await self._client.mget(keys)
        except redis.RedisError as e:
            logger.warning(f"Redis MGET error: {e}")
            return [None] * len(keys)

    async def set(self, key: str, value: bytes) -> bool:
        try:
            await self._client.set(key, value)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis SET error: {e}")
            return False

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._client.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE error: {e}")
            return 0

    async def scan(self, pattern: str) -> list[str]:
        """Collect keys matching a glob pattern (SCAN, not KEYS)."""
        keys: list[str] = []
        try:
            async for key in self._client.scan_iter(match=pattern, count=200):
                keys.append(key.decode() if isinstance(key, bytes) else key)
        except redis.RedisError as e:
            logger.warning(f"Redis SCAN error: {e}")
        return keys


# =============================================================================
# In-process
# =============================================================================


class MemoryStore:
    """Dict-backed store with the same contract as RedisStore."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def mget(self, keys: list[str]) -> list[bytes | None]:
        return [self._data.get(k) for k in keys]

    async def set(self, key: str, value: bytes) -> bool:
        self._data[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan(self, pattern: str) -> list[str]:
        return [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]

    async def close(self) -> None:
        self._data.clear()


async def open_store(url: str, timeout: float = 10.0) -> RedisStore | MemoryStore:
    """Connect to Redis, falling back to an in-process store if unreachable."""
    store = RedisStore(url)
    try:
        connected = await asyncio.wait_for(store.ping(), timeout=timeout)
    except asyncio.TimeoutError:
        connected = False

    if connected:
        logger.info(f"Redis connected: {url}")
        return store

    await store.close()
    logger.warning("Redis unavailable - indicator cache will not survive restarts")
    return MemoryStore()
