"""Durable key-value cache.

Two concrete backends are provided:

* Redis: shared across processes, survives restarts of this process.
* Local file: a JSON document on disk.  Used automatically when Redis
  is unavailable (``backend: auto``) or when configured explicitly.
"""

from __future__ import annotations

import logging
from pathlib import Path

from chatcapture.configs.system import CacheConfig
from chatcapture.infra.redis import connect_redis

from .base import CacheBackend, CacheUnavailable
from .local_backend import FileCacheBackend
from .redis_backend import RedisCacheBackend

logger = logging.getLogger(__name__)


async def build_cache_backend(config: CacheConfig) -> CacheBackend:
    """Choose and construct the configured backend.

    Raises:
        CacheUnavailable: when ``backend`` is ``"redis"`` and Redis
            cannot be reached.
    """
    if config.backend in ("auto", "redis"):
        client = await connect_redis(config.redis_uri)
        if client is not None:
            logger.info("Durable cache: Redis backend (%s)", config.redis_uri)
            return RedisCacheBackend(client)
        if config.backend == "redis":
            raise CacheUnavailable(f"Redis unreachable at {config.redis_uri}")

    path = Path(config.file_path).expanduser()
    logger.info("Durable cache: local file backend (%s)", path)
    return FileCacheBackend(path)


__all__ = [
    "CacheBackend",
    "CacheUnavailable",
    "FileCacheBackend",
    "RedisCacheBackend",
    "build_cache_backend",
]
