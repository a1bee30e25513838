"""Time- and size-triggered delivery of queued chats and messages.

Pending items live in two dicts keyed by identity:

* chats by chat id -- the latest title wins on re-insertion;
* messages by message id -- the first insertion wins.

A flush fires on whichever comes first: the debounce delay since the first
unflushed item, or the pending message count reaching ``max_batch_size``.
The flush swaps the pending dicts for fresh ones, so items arriving mid-flush
are never blocked.  Delivery is whole-batch: on any failure the snapshot is
merged back and retried on the next debounce tick.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from chatcapture.configs.system import BatchConfig
from chatcapture.gateway.models import BatchPayload, ChatRecord, MessageRecord
from chatcapture.gateway.remote_store import RemoteStoreApi
from chatcapture.infra.metrics import (
    BATCH_FLUSH_SIZE,
    BATCH_FLUSHES_TOTAL,
    BATCH_PENDING,
)
from chatcapture.infra.telemetry import (
    ATTR_BATCH_CHATS,
    ATTR_BATCH_MESSAGES,
    ATTR_BATCH_OUTCOME,
    SPAN_BATCH_FLUSH,
    tracer,
)

from .base import LifecycleService
from .storage import PendingBatchStore

logger = logging.getLogger(__name__)


class DeliveryFailed(Exception):
    """The remote store answered the batch with ``success: false``."""


class BatchScheduler(LifecycleService):
    def __init__(
        self,
        api: RemoteStoreApi,
        config: BatchConfig | None = None,
        *,
        provider_name: str = "ChatGPT",
        spill_store: PendingBatchStore | None = None,
    ) -> None:
        super().__init__()
        self._api = api
        self._config = config or BatchConfig()
        self._provider_name = provider_name
        self._spill_store = spill_store
        self._pending_chats: dict[str, ChatRecord] = {}
        self._pending_messages: dict[str, MessageRecord] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[bool] | None = None
        self._last_flush_failed = False
        self._closed = False

    # -- inspection ----------------------------------------------------------

    @property
    def pending_chats(self) -> dict[str, ChatRecord]:
        return dict(self._pending_chats)

    @property
    def pending_messages(self) -> dict[str, MessageRecord]:
        return dict(self._pending_messages)

    @property
    def is_flushing(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def has_pending(self) -> bool:
        return bool(self._pending_chats or self._pending_messages)

    # -- queueing ------------------------------------------------------------

    def queue_message(self, record: MessageRecord) -> None:
        if record.message_provider_id in self._pending_messages:
            return
        self._pending_messages[record.message_provider_id] = record
        self._update_gauge()

        if (
            len(self._pending_messages) >= self._config.max_batch_size
            and not self._last_flush_failed
        ):
            self._trigger_now()
        else:
            self._schedule()

    def queue_chat(self, chat_id: str, title: str) -> None:
        existing = self._pending_chats.get(chat_id)
        if existing is not None and existing.title == title:
            return
        self._pending_chats[chat_id] = ChatRecord(
            provider_chat_id=chat_id, title=title, provider_name=self._provider_name
        )
        self._update_gauge()
        self._schedule()

    # -- flushing ------------------------------------------------------------

    async def force_flush(self) -> bool:
        """Cancel the timer and deliver everything pending now.

        Waits for an in-progress flush first.  Returns ``True`` when nothing
        is left undelivered.
        """
        self._cancel_timer()
        while self.is_flushing:
            await asyncio.wait([self._flush_task])
        if not self.has_pending():
            return True
        return await asyncio.shield(self._start_flush())

    def _schedule(self) -> None:
        if self._timer is not None or self._closed:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(
            self._config.debounce_delay.total_seconds(), self._on_timer
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        # An in-progress flush reschedules when it finishes.
        if not self.is_flushing:
            self._start_flush()

    def _trigger_now(self) -> None:
        if self.is_flushing or self._closed:
            return
        self._start_flush()

    def _start_flush(self) -> asyncio.Task[bool]:
        self._cancel_timer()
        task = asyncio.create_task(self._flush(), name="batch-flush")
        self._flush_task = task
        task.add_done_callback(self._on_flush_done)
        return task

    def _on_flush_done(self, task: asyncio.Task[bool]) -> None:
        if task.cancelled() or self._closed or not self.has_pending():
            return
        if task.result() and len(self._pending_messages) >= self._config.max_batch_size:
            self._start_flush()
        else:
            self._schedule()

    async def _flush(self) -> bool:
        if not self.has_pending():
            return True

        chats, self._pending_chats = self._pending_chats, {}
        messages, self._pending_messages = self._pending_messages, {}
        payload = BatchPayload(
            chats=list(chats.values()), messages=list(messages.values())
        )

        with tracer.start_as_current_span(SPAN_BATCH_FLUSH) as span:
            span.set_attribute(ATTR_BATCH_CHATS, len(payload.chats))
            span.set_attribute(ATTR_BATCH_MESSAGES, len(payload.messages))
            try:
                result = await self._api.save_batch(payload)
                _check_result(result)
            except Exception as exc:
                self._restore(chats, messages)
                self._last_flush_failed = True
                span.set_attribute(ATTR_BATCH_OUTCOME, "error")
                BATCH_FLUSHES_TOTAL.labels(outcome="error").inc()
                logger.warning(
                    "Batch delivery failed (%d chats, %d messages kept pending): %s",
                    len(chats),
                    len(messages),
                    exc,
                )
                self._update_gauge()
                return False

            self._last_flush_failed = False
            span.set_attribute(ATTR_BATCH_OUTCOME, "ok")
            BATCH_FLUSHES_TOTAL.labels(outcome="ok").inc()
            BATCH_FLUSH_SIZE.observe(len(payload.messages))
            logger.info(
                "Delivered batch: %d chats, %d messages",
                len(payload.chats),
                len(payload.messages),
            )
            self._update_gauge()
            return True

    def _restore(
        self, chats: dict[str, ChatRecord], messages: dict[str, MessageRecord]
    ) -> None:
        # Earlier message wins; a newer chat title wins.
        merged_messages = dict(messages)
        for key, record in self._pending_messages.items():
            merged_messages.setdefault(key, record)
        self._pending_messages = merged_messages

        merged_chats = dict(chats)
        merged_chats.update(self._pending_chats)
        self._pending_chats = merged_chats

    def _update_gauge(self) -> None:
        BATCH_PENDING.labels(kind="chats").set(len(self._pending_chats))
        BATCH_PENDING.labels(kind="messages").set(len(self._pending_messages))

    # -- lifecycle -----------------------------------------------------------

    async def _on_initialize(self) -> None:
        self._closed = False
        if self._spill_store is None:
            return
        spilled = await self._spill_store.take()
        if spilled is None:
            return
        for chat in spilled.chats:
            self._pending_chats.setdefault(chat.provider_chat_id, chat)
        for message in spilled.messages:
            self._pending_messages.setdefault(message.message_provider_id, message)
        self._update_gauge()
        logger.info(
            "Restored spilled batch: %d chats, %d messages",
            len(spilled.chats),
            len(spilled.messages),
        )
        if self.has_pending():
            self._schedule()

    async def _on_cleanup(self) -> None:
        self._closed = True
        delivered = await self.force_flush()
        self._cancel_timer()
        if delivered or self._spill_store is None:
            return
        payload = BatchPayload(
            chats=list(self._pending_chats.values()),
            messages=list(self._pending_messages.values()),
        )
        try:
            await self._spill_store.save(payload)
        except Exception:
            logger.exception(
                "Could not spill %d undelivered messages", len(payload.messages)
            )
            return
        logger.warning(
            "Final flush failed; spilled %d chats, %d messages for next start",
            len(payload.chats),
            len(payload.messages),
        )
        self._pending_chats = {}
        self._pending_messages = {}
        self._update_gauge()


def _check_result(result: Any) -> None:
    if isinstance(result, dict) and result.get("success") is False:
        raise DeliveryFailed(result.get("message") or "Remote store rejected the batch")
