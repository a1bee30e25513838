"""Typed views over the durable cache."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from chatcapture.gateway.models import BatchPayload
from chatcapture.infra.cache import CacheBackend

from .models import ChatInfo

logger = logging.getLogger(__name__)


class ConversationStore:
    """The last-known conversation list, stored under one key."""

    def __init__(self, backend: CacheBackend, key_prefix: str) -> None:
        self._backend = backend
        self.key = f"{key_prefix}:conversations"

    async def load(self) -> list[ChatInfo]:
        raw = await self._backend.get(self.key)
        if not isinstance(raw, list):
            return []
        chats = []
        for item in raw:
            try:
                chats.append(ChatInfo.model_validate(item))
            except ValidationError:
                logger.debug("Dropping malformed cached chat: %r", item)
        return chats

    async def save(self, chats: list[ChatInfo]) -> None:
        await self._backend.set(self.key, [c.model_dump(mode="json") for c in chats])

    async def clear(self) -> None:
        await self._backend.delete(self.key)


class PendingBatchStore:
    """Undelivered batch spilled at shutdown, restored at startup."""

    def __init__(self, backend: CacheBackend, key_prefix: str) -> None:
        self._backend = backend
        self.key = f"{key_prefix}:pending_batch"

    async def save(self, payload: BatchPayload) -> None:
        await self._backend.set(self.key, payload.model_dump(mode="json"))

    async def take(self) -> BatchPayload | None:
        """Return and remove the spilled batch, if any."""
        raw = await self._backend.get(self.key)
        if raw is None:
            return None
        await self._backend.delete(self.key)
        try:
            return BatchPayload.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed spilled batch", exc_info=True)
            return None
