"""Tests for the durable cache backends and backend selection."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from chatcapture.configs.system import CacheConfig
from chatcapture.infra.cache import (
    CacheUnavailable,
    FileCacheBackend,
    RedisCacheBackend,
    build_cache_backend,
)

# =========================================================================
# File backend
# =========================================================================


class TestFileCacheBackend:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, tmp_path):
        backend = FileCacheBackend(tmp_path / "cache.json")

        await backend.set("k", {"items": [1, 2]})
        assert await backend.get("k") == {"items": [1, 2]}

        await backend.delete("k")
        assert await backend.get("k") is None
        await backend.delete("missing")

    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path):
        path = tmp_path / "nested" / "cache.json"
        await FileCacheBackend(path).set("k", "v")

        assert await FileCacheBackend(path).get("k") == "v"
        assert json.loads(path.read_text()) == {"k": "v"}

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        backend = FileCacheBackend(path)

        assert await backend.get("k") is None
        await backend.set("k", 1)
        assert json.loads(path.read_text()) == {"k": 1}


# =========================================================================
# Redis backend
# =========================================================================


class TestRedisCacheBackend:
    @pytest.mark.asyncio
    async def test_values_stored_as_json(self):
        redis = AsyncMock()
        redis.get.return_value = '{"a": 1}'
        backend = RedisCacheBackend(redis)

        await backend.set("k", {"a": 1})
        assert await backend.get("k") == {"a": 1}

        redis.set.assert_awaited_once_with("k", '{"a": 1}')

    @pytest.mark.asyncio
    async def test_missing_key(self):
        redis = AsyncMock()
        redis.get.return_value = None

        assert await RedisCacheBackend(redis).get("k") is None


# =========================================================================
# Backend selection
# =========================================================================


class TestBuildCacheBackend:
    @pytest.mark.asyncio
    async def test_file_backend(self, tmp_path):
        config = CacheConfig(backend="file", file_path=str(tmp_path / "c.json"))

        backend = await build_cache_backend(config)

        assert isinstance(backend, FileCacheBackend)

    @pytest.mark.asyncio
    async def test_auto_falls_back_to_file(self, tmp_path):
        config = CacheConfig(backend="auto", file_path=str(tmp_path / "c.json"))

        with patch(
            "chatcapture.infra.cache.connect_redis", AsyncMock(return_value=None)
        ):
            backend = await build_cache_backend(config)

        assert isinstance(backend, FileCacheBackend)

    @pytest.mark.asyncio
    async def test_auto_prefers_redis(self, tmp_path):
        config = CacheConfig(backend="auto", file_path=str(tmp_path / "c.json"))

        with patch(
            "chatcapture.infra.cache.connect_redis", AsyncMock(return_value=AsyncMock())
        ):
            backend = await build_cache_backend(config)

        assert isinstance(backend, RedisCacheBackend)

    @pytest.mark.asyncio
    async def test_explicit_redis_unreachable(self):
        config = CacheConfig(backend="redis")

        with patch(
            "chatcapture.infra.cache.connect_redis", AsyncMock(return_value=None)
        ):
            with pytest.raises(CacheUnavailable):
                await build_cache_backend(config)
