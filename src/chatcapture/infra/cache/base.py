"""Durable key-value cache: abstract backend and exceptions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CacheUnavailable(Exception):
    """Raised when the configured cache backend cannot be reached."""


class CacheBackend(ABC):
    """Interface for durable key-value backends.

    Values are JSON-compatible Python objects.  Every backend must survive
    a process restart (that is the whole point of the cache).
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value, or ``None`` when the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store *value* under *key*, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key*; a missing key is not an error."""

    @abstractmethod
    async def aclose(self) -> None:
        """Release any resources held by the backend."""
