"""Assembly of streamed assistant replies.

The host streams a reply as ``data: <payload>`` frames separated by blank
lines.  A payload is one of:

* a message envelope (``{"v": {"message": {...}, "conversation_id": ...}}``),
  whose ``content.parts[0]`` seeds the text;
* a bare text delta (``{"v": "..."}``);
* a path-addressed mutation (``{"p": "/message/content/parts/0",
  "o": "append", "v": "..."}``);
* a terminator: the ``[DONE]`` sentinel, a ``message_stream_complete``
  event, or an envelope flagged ``end_turn``.

The format is undocumented and changes without notice, so parsing is
best-effort: unparseable frames are skipped and an unrecognised stream
yields ``None`` rather than an error.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from chatcapture.infra.id_utils import generate_id
from chatcapture.infra.metrics import (
    STREAM_FRAMES_SKIPPED_TOTAL,
    STREAMS_ASSEMBLED_TOTAL,
)
from chatcapture.infra.telemetry import (
    ATTR_CONVERSATION_ID,
    ATTR_STREAM_FRAMES,
    ATTR_STREAM_RECOGNISED,
    ATTR_STREAM_SKIPPED,
    SPAN_STREAM_ASSEMBLE,
    tracer,
)

from .models import ROLE_ASSISTANT, ROLE_USER, AssistantStreamMessage

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
CONTENT_PATH = "/message/content/parts/0"
OP_APPEND = "append"
EVENT_STREAM_COMPLETE = "message_stream_complete"
EVENT_STREAM_CONTENT_TYPE = "text/event-stream"


def is_streaming_response(headers: Any) -> bool:
    """True when the response advertises an event stream."""
    return EVENT_STREAM_CONTENT_TYPE in (headers.get("content-type") or "")


def extract_user_message(request_body: Any) -> dict[str, Any] | None:
    """Pull the user turn out of a chat-completion request body.

    Returns ``{"id", "content", "model", "conversation_id"}`` or ``None`` if
    the body carries no user-authored message.
    """
    if not isinstance(request_body, dict):
        return None
    messages = request_body.get("messages")
    if not isinstance(messages, list):
        return None

    for message in messages:
        if not isinstance(message, dict):
            continue
        author = message.get("author") or {}
        role = author.get("role") if isinstance(author, dict) else None
        role = role or message.get("role")
        if role != ROLE_USER:
            continue

        content = message.get("content")
        if isinstance(content, dict):
            parts = content.get("parts") or []
            text = "\n".join(p for p in parts if isinstance(p, str))
        elif isinstance(content, str):
            text = content
        else:
            text = ""
        if not text:
            return None

        return {
            "id": message.get("id") or generate_id(ROLE_USER),
            "content": text,
            "model": request_body.get("model"),
            "conversation_id": request_body.get("conversation_id"),
        }
    return None


def _frame_data(frame: str) -> str | None:
    for line in frame.splitlines():
        if line.startswith(DATA_PREFIX):
            return line[len(DATA_PREFIX) :].strip()
    return None


class StreamProcessor:
    """Incremental decoder for one streamed reply.

    A fresh instance is used per stream; ``process_stream`` is the only
    entry point.
    """

    def __init__(self) -> None:
        self._envelope: dict[str, Any] | None = None
        self._content = ""
        self._conversation_id: str | None = None
        self._model: str | None = None
        self._done = False
        self._frames = 0
        self._skipped = 0

    async def process_stream(
        self, chunks: AsyncIterator[bytes], request_body: Any = None
    ) -> AssistantStreamMessage | None:
        """Consume *chunks* and return the assembled reply, or ``None``."""
        if isinstance(request_body, dict):
            self._conversation_id = request_body.get("conversation_id")
            self._model = request_body.get("model")

        with tracer.start_as_current_span(SPAN_STREAM_ASSEMBLE) as span:
            try:
                await self._read(chunks)
            except Exception:
                STREAMS_ASSEMBLED_TOTAL.labels(result="read_error").inc()
                logger.warning("Stream read failed, abandoning assembly", exc_info=True)
                return None
            finally:
                span.set_attribute(ATTR_STREAM_FRAMES, self._frames)
                span.set_attribute(ATTR_STREAM_SKIPPED, self._skipped)

            result = self._result()
            span.set_attribute(ATTR_STREAM_RECOGNISED, result is not None)
            if result is None:
                STREAMS_ASSEMBLED_TOTAL.labels(result="unrecognised").inc()
                logger.info(
                    "Stream ended without a recognisable reply (%d frames)",
                    self._frames,
                )
                return None
            span.set_attribute(ATTR_CONVERSATION_ID, result.conversation_id)
            STREAMS_ASSEMBLED_TOTAL.labels(result="ok").inc()
            return result

    async def _read(self, chunks: AsyncIterator[bytes]) -> None:
        # Multi-byte characters may straddle chunk boundaries.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        async for chunk in chunks:
            buffer += decoder.decode(chunk)
            *frames, buffer = buffer.split(FRAME_DELIMITER)
            for frame in frames:
                self._handle_frame(frame)
                if self._done:
                    return
        buffer += decoder.decode(b"", final=True)
        # A final frame without a trailing delimiter.
        if buffer.strip():
            self._handle_frame(buffer)

    def _handle_frame(self, frame: str) -> None:
        if not frame.strip():
            return
        data = _frame_data(frame)
        if data is None:
            return
        self._frames += 1
        if data == DONE_SENTINEL:
            self._done = True
            return
        try:
            payload = json.loads(data)
        except ValueError:
            self._skip(data)
            return
        if not isinstance(payload, dict):
            self._skip(data)
            return
        try:
            self._apply(payload)
        except (TypeError, AttributeError, ValueError):
            self._skip(data)

    def _skip(self, data: str) -> None:
        self._skipped += 1
        STREAM_FRAMES_SKIPPED_TOTAL.inc()
        logger.debug("Skipping unparseable stream frame: %.80s", data)

    def _apply(self, payload: dict[str, Any]) -> None:
        value = payload.get("v")

        if isinstance(value, dict):
            message = value.get("message")
            if isinstance(message, dict):
                if self._envelope is None:
                    self._envelope = message
                    content = message.get("content")
                    parts = content.get("parts") if isinstance(content, dict) else None
                    first = parts[0] if isinstance(parts, list) and parts else ""
                    self._content = first if isinstance(first, str) else ""
                    self._conversation_id = (
                        value.get("conversation_id") or self._conversation_id
                    )
                    metadata = message.get("metadata")
                    if isinstance(metadata, dict):
                        self._model = metadata.get("model_slug") or self._model
                if message.get("end_turn") is True:
                    self._done = True

        elif isinstance(value, str):
            path = payload.get("p")
            if path is None or (
                isinstance(path, str)
                and CONTENT_PATH in path
                and payload.get("o") == OP_APPEND
            ):
                self._content += value

        elif isinstance(value, list):
            # Batched mutations share the frame's shape.
            for op in value:
                if isinstance(op, dict):
                    self._apply(op)

        if payload.get("type") == EVENT_STREAM_COMPLETE:
            self._done = True

    def _result(self) -> AssistantStreamMessage | None:
        if self._envelope is None or not self._conversation_id or not self._content:
            return None
        return AssistantStreamMessage(
            id=self._envelope.get("id") or generate_id(ROLE_ASSISTANT),
            content=self._content,
            conversation_id=self._conversation_id,
            model=self._model or "unknown",
        )
