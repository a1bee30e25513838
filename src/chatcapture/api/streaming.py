"""Fan-out of pipeline events to SSE subscribers.

Each subscriber owns a bounded queue.  A slow subscriber loses events
(logged) instead of back-pressuring the capture path.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator

from chatcapture.capture.models import ChatUpdate, MessageEvent

from .models import CaptureEvent, ChatUpdateOut, MessageEventOut, format_sse

logger = logging.getLogger(__name__)


class EventHub:
    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[CaptureEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[CaptureEvent]:
        queue: asyncio.Queue[CaptureEvent] = asyncio.Queue(self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[CaptureEvent]) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: CaptureEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("SSE subscriber queue full, dropping %s event", event.type)

    # Listener adapters for the capture handlers.

    def on_message(self, event: MessageEvent) -> None:
        self.publish(
            MessageEventOut(
                role=event.type,
                message_id=event.message_id,
                conversation_id=event.conversation_id,
                content=event.content,
                model=event.model,
                timestamp=event.timestamp,
            )
        )

    def on_chat_change(self, update: ChatUpdate) -> None:
        self.publish(ChatUpdateOut(chat_id=update.chat_id, title=update.title))


async def sse_stream(
    hub: EventHub, *, limit: int | None = None
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for hub events until the client goes away.

    ``limit`` ends the stream after that many events.
    """
    queue = hub.subscribe()
    sent = 0
    try:
        while limit is None or sent < limit:
            event = await queue.get()
            yield format_sse(event)
            sent += 1
    except asyncio.CancelledError:
        logger.debug("SSE subscriber disconnected")
        raise
    finally:
        hub.unsubscribe(queue)
