"""Ingestion boundary for individual turns.

``MessageHandler.process_message`` is idempotent per message id: the dedup
ledger remembers every accepted id (bounded LRU) and repeated observations
of the same turn, from the network or the DOM, are no-ops.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol

from chatcapture.gateway.models import MessageRecord
from chatcapture.infra.metrics import (
    MESSAGES_ACCEPTED_TOTAL,
    MESSAGES_DUPLICATE_TOTAL,
    MESSAGES_UNATTRIBUTED_TOTAL,
)

from .batch import BatchScheduler
from .models import MessageEvent

logger = logging.getLogger(__name__)

MessageListener = Callable[[MessageEvent], Any]


class ChatContext(Protocol):
    @property
    def current_chat_id(self) -> str | None: ...


class DedupLedger:
    """Set of accepted message ids, evicting the oldest past ``max_entries``."""

    def __init__(self, max_entries: int = 100_000) -> None:
        self._max_entries = max_entries
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> None:
        self._ids[message_id] = None
        self._ids.move_to_end(message_id)
        while len(self._ids) > self._max_entries:
            self._ids.popitem(last=False)


class MessageHandler:
    def __init__(
        self,
        scheduler: BatchScheduler,
        *,
        chat_context: ChatContext | None = None,
        max_entries: int = 100_000,
    ) -> None:
        self._scheduler = scheduler
        self.chat_context = chat_context
        self._ledger = DedupLedger(max_entries)
        self._ranks: dict[str, int] = {}
        self._listeners: list[MessageListener] = []
        self._listener_tasks: set[asyncio.Task[Any]] = set()

    @property
    def ledger(self) -> DedupLedger:
        return self._ledger

    def on_message(self, listener: MessageListener) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def process_message(self, event: MessageEvent) -> None:
        if event.message_id in self._ledger:
            MESSAGES_DUPLICATE_TOTAL.inc()
            return

        conversation_id = event.conversation_id
        if not conversation_id and self.chat_context is not None:
            conversation_id = self.chat_context.current_chat_id
        if not conversation_id:
            MESSAGES_UNATTRIBUTED_TOTAL.inc()
            logger.warning(
                "Dropping %s message %s: no conversation to attribute it to",
                event.type,
                event.message_id,
            )
            return

        self._ledger.add(event.message_id)
        MESSAGES_ACCEPTED_TOTAL.labels(role=event.type).inc()

        # Rank is observation order within the conversation.
        rank = self._ranks.get(conversation_id, 0)
        self._ranks[conversation_id] = rank + 1

        self._scheduler.queue_message(
            MessageRecord(
                message_provider_id=event.message_id,
                content=event.content,
                role=event.type,
                rank=rank,
                chat_provider_id=conversation_id,
                model=event.model or "",
                thinking_time=event.thinking_time or 0.0,
            )
        )
        self._notify_later(event)

    def _notify_later(self, event: MessageEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._notify(event)
            return
        loop.call_soon(self._notify, event)

    def _notify(self, event: MessageEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception:
                logger.exception("Message listener failed for %s", event.message_id)
                continue
            if inspect.isawaitable(result):
                self._run_listener(result, event.message_id)

    def _run_listener(self, awaitable: Any, message_id: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop to run async listener for %s", message_id)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable)
        self._listener_tasks.add(task)
        task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task[Any]) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async message listener failed", exc_info=exc)
