"""Redis-backed cache backend."""

from __future__ import annotations

import json
from typing import Any

from redis.asyncio import Redis

from .base import CacheBackend


class RedisCacheBackend(CacheBackend):
    """Stores JSON-encoded values as plain Redis strings.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        await self._redis.set(key, json.dumps(value, ensure_ascii=False))

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def aclose(self) -> None:
        await self._redis.aclose()
