"""Tests for streamed reply assembly."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

import pytest

from chatcapture.capture.stream_processor import (
    StreamProcessor,
    extract_user_message,
    is_streaming_response,
)

# =========================================================================
# Helpers
# =========================================================================


def _frame(payload) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


def _envelope(
    text: str = "Hi",
    *,
    message_id: str = "m-1",
    conversation_id: str = "c-1",
    model: str = "gpt-4o",
    end_turn: bool | None = None,
) -> dict:
    message = {
        "id": message_id,
        "author": {"role": "assistant"},
        "content": {"content_type": "text", "parts": [text]},
        "metadata": {"model_slug": model},
    }
    if end_turn is not None:
        message["end_turn"] = end_turn
    return {"v": {"message": message, "conversation_id": conversation_id}}


def _append(text: str) -> dict:
    return {"p": "/message/content/parts/0", "o": "append", "v": text}


async def _chunks(*parts: str) -> AsyncIterator[bytes]:
    for part in parts:
        yield part.encode("utf-8")


async def _failing_chunks() -> AsyncIterator[bytes]:
    yield _frame(_envelope()).encode()
    raise ConnectionError("stream cut")


# =========================================================================
# Assembly
# =========================================================================


class TestStreamProcessor:
    @pytest.mark.asyncio
    async def test_envelope_plus_append(self):
        stream = _chunks(
            _frame(_envelope("Hi")), _frame(_append(" there")), _frame("[DONE]")
        )

        result = await StreamProcessor().process_stream(stream)

        assert result is not None
        assert result.id == "m-1"
        assert result.content == "Hi there"
        assert result.conversation_id == "c-1"
        assert result.model == "gpt-4o"

    @pytest.mark.asyncio
    async def test_frames_split_across_chunks(self):
        raw = _frame(_envelope("Hel")) + _frame(_append("lo")) + _frame("[DONE]")
        pieces = [raw[i : i + 7] for i in range(0, len(raw), 7)]

        result = await StreamProcessor().process_stream(_chunks(*pieces))

        assert result is not None
        assert result.content == "Hello"

    @pytest.mark.asyncio
    async def test_bare_string_delta_appends(self):
        stream = _chunks(_frame(_envelope("A")), _frame({"v": "B"}), _frame({"v": "C"}))

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "ABC"

    @pytest.mark.asyncio
    async def test_other_paths_ignored(self):
        stream = _chunks(
            _frame(_envelope("A")),
            _frame({"p": "/message/status", "o": "replace", "v": "finished"}),
        )

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "A"

    @pytest.mark.asyncio
    async def test_batched_operations(self):
        batch = {"v": [_append(" one"), _append(" two")]}
        stream = _chunks(_frame(_envelope("zero")), _frame(batch))

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "zero one two"

    @pytest.mark.asyncio
    async def test_garbage_frame_skipped(self):
        stream = _chunks(
            _frame(_envelope("Hi")),
            "data: {not json\n\n",
            _frame(_append("!")),
        )

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "Hi!"

    @pytest.mark.asyncio
    async def test_frames_after_done_ignored(self):
        stream = _chunks(
            _frame(_envelope("Hi")), _frame("[DONE]"), _frame(_append(" late"))
        )

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "Hi"

    @pytest.mark.asyncio
    async def test_stream_complete_event_terminates(self):
        stream = _chunks(
            _frame(_envelope("Hi")),
            _frame({"type": "message_stream_complete"}),
            _frame(_append(" late")),
        )

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "Hi"

    @pytest.mark.asyncio
    async def test_end_turn_terminates(self):
        stream = _chunks(
            _frame(_envelope("Done", end_turn=True)), _frame(_append(" late"))
        )

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "Done"

    @pytest.mark.asyncio
    async def test_trailing_frame_without_delimiter(self):
        stream = _chunks(_frame(_envelope("Hi")), 'data: {"v": "!"}')

        result = await StreamProcessor().process_stream(stream)

        assert result.content == "Hi!"

    @pytest.mark.asyncio
    async def test_no_envelope_yields_none(self):
        stream = _chunks(_frame({"v": "orphan"}), _frame("[DONE]"))

        assert await StreamProcessor().process_stream(stream) is None

    @pytest.mark.asyncio
    async def test_missing_conversation_yields_none(self):
        stream = _chunks(_frame(_envelope("Hi", conversation_id="")))

        assert await StreamProcessor().process_stream(stream) is None

    @pytest.mark.asyncio
    async def test_conversation_from_request_body(self):
        stream = _chunks(_frame(_envelope("Hi", conversation_id="")))

        result = await StreamProcessor().process_stream(
            stream, {"conversation_id": "c-req", "model": "auto"}
        )

        assert result.conversation_id == "c-req"
        assert result.model == "gpt-4o"

    @pytest.mark.asyncio
    async def test_read_error_yields_none(self):
        assert await StreamProcessor().process_stream(_failing_chunks()) is None

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_chunks(self):
        body = (
            _frame(_envelope("Hi")) + _frame(_append(" café")) + _frame("[DONE]")
        ).encode("utf-8")
        cut = body.index("é".encode("utf-8")) + 1

        async def raw() -> AsyncIterator[bytes]:
            yield body[:cut]
            yield body[cut:]

        result = await StreamProcessor().process_stream(raw())

        assert result.content == "Hi café"

    @pytest.mark.asyncio
    async def test_drifted_frames_skipped_mid_stream(self):
        stream = _chunks(
            _frame(_envelope("Hi")),
            _frame({"p": 0, "o": "append", "v": "?"}),
            _frame({"v": [{"p": ["x"], "o": "append", "v": "?"}]}),
            _frame(_append(" there")),
            _frame("[DONE]"),
        )

        result = await StreamProcessor().process_stream(stream)

        assert result is not None
        assert result.content == "Hi there"

    @pytest.mark.asyncio
    async def test_envelope_with_odd_content_and_metadata(self):
        odd = {
            "v": {
                "message": {"id": "m-9", "content": "flat", "metadata": "none"},
                "conversation_id": "c-1",
            }
        }
        stream = _chunks(_frame(odd), _frame({"v": "Hello"}), _frame("[DONE]"))

        result = await StreamProcessor().process_stream(stream, {"model": "auto"})

        assert result.id == "m-9"
        assert result.content == "Hello"
        assert result.model == "auto"


# =========================================================================
# Request-side helpers
# =========================================================================


class TestExtractUserMessage:
    def test_host_shape(self):
        body = {
            "conversation_id": "c-1",
            "model": "gpt-4o",
            "messages": [
                {
                    "id": "u-1",
                    "author": {"role": "user"},
                    "content": {"content_type": "text", "parts": ["line 1", "line 2"]},
                }
            ],
        }

        result = extract_user_message(body)

        assert result == {
            "id": "u-1",
            "content": "line 1\nline 2",
            "model": "gpt-4o",
            "conversation_id": "c-1",
        }

    def test_openai_shape_generates_id(self):
        body = {
            "model": "gpt-4o-mini",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "hello"},
            ],
        }

        result = extract_user_message(body)

        assert result["content"] == "hello"
        assert result["id"]
        assert result["conversation_id"] is None

    def test_no_user_message(self):
        assert extract_user_message({"messages": [{"role": "system", "content": "x"}]}) is None

    def test_not_a_dict(self):
        assert extract_user_message("raw text") is None
        assert extract_user_message(None) is None

    def test_empty_content(self):
        body = {"messages": [{"role": "user", "content": ""}]}
        assert extract_user_message(body) is None


class TestIsStreamingResponse:
    def test_event_stream(self):
        assert is_streaming_response({"content-type": "text/event-stream; charset=utf-8"})

    def test_json(self):
        assert not is_streaming_response({"content-type": "application/json"})
        assert not is_streaming_response({})
