"""Tracking of the active conversation and its title."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import httpx

from chatcapture.configs.system import HostConfig
from chatcapture.gateway.models import ChatRecord
from chatcapture.gateway.remote_store import RemoteStoreApi
from chatcapture.infra.metrics import CHATS_FORWARDED_TOTAL
from chatcapture.infra.telemetry import (
    ATTR_CONVERSATION_ID,
    SPAN_CONVERSATION_FETCH,
    tracer,
)

from .base import LifecycleService
from .batch import BatchScheduler
from .dom import PageSource, title_from_html
from .messages import MessageHandler
from .models import ChatInfo, ChatUpdate
from .parsers import chat_from_detail, chats_from_list, messages_from_detail

logger = logging.getLogger(__name__)

DetailFetcher = Callable[[str], Awaitable[Any]]
ChatListener = Callable[[ChatUpdate], Any]


def make_detail_fetcher(client: httpx.AsyncClient, url_template: str) -> DetailFetcher:
    """Fetch a conversation through the host's own read endpoint."""

    async def fetch(chat_id: str) -> Any:
        response = await client.get(url_template.format(chat_id=chat_id))
        response.raise_for_status()
        return response.json()

    return fetch


class ConversationHandler(LifecycleService):
    """Owns the current chat id and title.

    Two transitions drive it:

    * ``set_current_chat_id`` -- navigation.  The title resets to the
      untitled sentinel, the DOM is consulted for a title, and the
      conversation detail is fetched proactively.
    * ``update_chat_title`` -- title discovery.  Placeholder titles and
      unchanged titles are ignored; anything else is forwarded to the remote
      store in the background.
    """

    def __init__(
        self,
        api: RemoteStoreApi,
        scheduler: BatchScheduler,
        messages: MessageHandler,
        config: HostConfig | None = None,
        *,
        provider_name: str = "ChatGPT",
        page_source: PageSource | None = None,
        detail_fetcher: DetailFetcher | None = None,
    ) -> None:
        super().__init__()
        self._api = api
        self._scheduler = scheduler
        self._messages = messages
        self._config = config or HostConfig()
        self._provider_name = provider_name
        self._page_source = page_source
        self._detail_fetcher = detail_fetcher
        self._current_chat_id: str | None = None
        self._current_chat_title = self._config.untitled_title
        self._processed: set[str] = set()
        self._listeners: list[ChatListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def current_chat_id(self) -> str | None:
        return self._current_chat_id

    @property
    def current_chat_title(self) -> str:
        return self._current_chat_title

    def on_chat_change(self, listener: ChatListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def is_placeholder(self, title: str) -> bool:
        return title in self._config.placeholder_titles

    # -- navigation ----------------------------------------------------------

    def set_current_chat_id(self, chat_id: str | None) -> None:
        chat_id = chat_id or None
        if chat_id == self._current_chat_id:
            return
        logger.info("Active conversation changed: %s", chat_id)
        self._current_chat_id = chat_id
        self._current_chat_title = self._config.untitled_title
        self._notify()
        if chat_id is None:
            return
        self.update_title_from_dom()
        if self._detail_fetcher is not None and chat_id not in self._processed:
            self._spawn(self.fetch_conversation(chat_id), f"conversation-fetch:{chat_id}")

    def update_title_from_dom(self) -> bool:
        chat_id = self._current_chat_id
        if self._page_source is None or chat_id is None:
            return False
        try:
            title = title_from_html(self._page_source() or "", chat_id)
        except Exception:
            logger.warning("Could not read chat title from page", exc_info=True)
            return False
        return bool(title) and self.update_chat_title(title)

    async def fetch_conversation(self, chat_id: str) -> bool:
        """Read *chat_id* from the host and process it; ``False`` on failure."""
        if self._detail_fetcher is None:
            return False
        with tracer.start_as_current_span(SPAN_CONVERSATION_FETCH) as span:
            span.set_attribute(ATTR_CONVERSATION_ID, chat_id)
            try:
                body = await self._detail_fetcher(chat_id)
            except Exception:
                logger.warning("Conversation fetch failed for %s", chat_id, exc_info=True)
                return False
        return self.process_conversation_detail(body)

    # -- titles --------------------------------------------------------------

    def update_chat_title(self, title: str) -> bool:
        """Adopt *title* for the current chat; ``True`` if it was forwarded."""
        if not self._adopt_title(title):
            return False
        if self._current_chat_id is None:
            return False
        self.forward_chat(
            ChatInfo(id=self._current_chat_id, title=self._current_chat_title),
            source="title",
        )
        return True

    def _adopt_title(self, title: str | None) -> bool:
        title = (title or "").strip()
        if not title or self.is_placeholder(title) or title == self._current_chat_title:
            return False
        self._current_chat_title = title
        self._notify()
        return True

    def forward_chat(self, chat: ChatInfo, *, source: str) -> None:
        """Save one chat in the background; failures are only logged."""
        record = ChatRecord(
            provider_chat_id=chat.id, title=chat.title, provider_name=self._provider_name
        )
        CHATS_FORWARDED_TOTAL.labels(source=source).inc()
        self._spawn(self._api.save_chat(record), f"chat-save:{chat.id}")

    # -- host payloads -------------------------------------------------------

    async def process_conversation_list(self, body: Any) -> list[ChatInfo]:
        """Forward a page of the host's conversation list as one delivery."""
        chats = chats_from_list(body)
        if not chats:
            return []
        for chat in chats:
            if chat.id == self._current_chat_id:
                self._adopt_title(chat.title)
        await self.forward_chats(chats, source="list")
        return chats

    async def forward_chats(self, chats: list[ChatInfo], *, source: str) -> bool:
        records = [
            ChatRecord(
                provider_chat_id=c.id, title=c.title, provider_name=self._provider_name
            )
            for c in chats
        ]
        try:
            await self._api.save_chat_batch(records)
        except Exception as exc:
            logger.warning("Chat list delivery failed (%d chats): %s", len(records), exc)
            return False
        CHATS_FORWARDED_TOTAL.labels(source=source).inc(len(records))
        return True

    def process_conversation_detail(self, body: Any) -> bool:
        """Ingest a full conversation; each conversation at most once."""
        chat = chat_from_detail(body)
        if chat is None:
            logger.debug("Ignoring conversation payload without an id")
            return False
        if chat.id in self._processed:
            return False
        self._processed.add(chat.id)

        if not self.is_placeholder(chat.title):
            self._scheduler.queue_chat(chat.id, chat.title)
            CHATS_FORWARDED_TOTAL.labels(source="detail").inc()
        if chat.id == self._current_chat_id:
            self._adopt_title(chat.title)

        events = messages_from_detail(body)
        for event in events:
            self._messages.process_message(event)
        logger.info("Processed conversation %s (%d turns)", chat.id, len(events))
        return True

    # -- internals -----------------------------------------------------------

    def _notify(self) -> None:
        update = ChatUpdate(chat_id=self._current_chat_id, title=self._current_chat_title)
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Chat listener failed")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("%s failed: %s", task.get_name(), exc)

    async def drain(self) -> None:
        """Wait for background saves and fetches to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _on_cleanup(self) -> None:
        await self.drain()
