"""Single-process cache backend persisted to a local JSON file."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from .base import CacheBackend

logger = logging.getLogger(__name__)


class FileCacheBackend(CacheBackend):
    """JSON-file backed key-value store guarded by an ``asyncio.Lock``.

    The whole file is loaded lazily on first access and rewritten
    atomically (temp file + rename) on every mutation.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        try:
            with open(self._path, encoding="utf-8") as f:
                loaded = json.load(f)
            self._data = loaded if isinstance(loaded, dict) else {}
        except FileNotFoundError:
            self._data = {}
        except (OSError, json.JSONDecodeError):
            logger.warning(
                "Cache file %s unreadable, starting empty", self._path, exc_info=True
            )
            self._data = {}
        return self._data

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        os.replace(tmp, self._path)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return self._load().get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = self._load()
            data[key] = value
            self._write(data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._write(data)

    async def aclose(self) -> None:
        pass
