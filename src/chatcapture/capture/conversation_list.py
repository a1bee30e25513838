"""Known-conversation registry backed by the durable cache."""

from __future__ import annotations

import logging
from typing import Any

from .base import LifecycleService
from .conversation import ConversationHandler
from .models import ChatInfo
from .storage import ConversationStore

logger = logging.getLogger(__name__)


class ConversationListService(LifecycleService):
    """Keeps the last-known conversation list in memory and on disk.

    At startup the cached list is loaded and re-forwarded as one batch.  Each
    observed list page is merged in (last title wins) and the cache rewritten.
    """

    def __init__(
        self, store: ConversationStore, conversations: ConversationHandler
    ) -> None:
        super().__init__()
        self._store = store
        self._conversations = conversations
        self._chats: dict[str, ChatInfo] = {}
        self.fetched = False

    @property
    def chats(self) -> list[ChatInfo]:
        return list(self._chats.values())

    def get(self, chat_id: str) -> ChatInfo | None:
        return self._chats.get(chat_id)

    async def _on_initialize(self) -> None:
        try:
            cached = await self._store.load()
        except Exception:
            logger.warning("Could not read cached conversations", exc_info=True)
            return
        if not cached:
            return
        for chat in cached:
            self._chats[chat.id] = chat
        self.fetched = True
        logger.info("Loaded %d conversations from cache", len(cached))
        await self._conversations.forward_chats(cached, source="cache")

    async def process_list(self, body: Any) -> list[ChatInfo]:
        chats = await self._conversations.process_conversation_list(body)
        if not chats:
            return []
        for chat in chats:
            self._chats[chat.id] = chat
        self.fetched = True
        await self._persist()
        return chats

    async def refresh(self) -> None:
        """Forget every known conversation, in memory and in the cache."""
        self._chats.clear()
        self.fetched = False
        try:
            await self._store.clear()
        except Exception:
            logger.warning("Could not clear cached conversations", exc_info=True)

    async def _persist(self) -> None:
        try:
            await self._store.save(self.chats)
        except Exception:
            logger.warning("Could not write conversation cache", exc_info=True)
            return
        logger.debug("Cached %d conversations", len(self._chats))
