"""Tests for conversation tracking, the cached conversation list and users."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatcapture.capture.batch import BatchScheduler
from chatcapture.capture.conversation import ConversationHandler
from chatcapture.capture.conversation_list import ConversationListService
from chatcapture.capture.messages import MessageHandler
from chatcapture.capture.storage import ConversationStore
from chatcapture.capture.users import UserHandler
from chatcapture.gateway.exceptions import NetworkFailure, RemoteStoreError
from chatcapture.gateway.remote_store import RemoteStoreApi
from chatcapture.infra.cache import FileCacheBackend

CHAT_ID = "0a1b2c3d-1111-4222-8333-444455556666"

# =========================================================================
# Helpers
# =========================================================================


def _make_handler(**kwargs) -> tuple[ConversationHandler, AsyncMock, MagicMock, MagicMock]:
    api = AsyncMock(spec=RemoteStoreApi)
    api.save_chat.return_value = {"success": True}
    api.save_chat_batch.return_value = {"success": True}
    scheduler = MagicMock(spec=BatchScheduler)
    messages = MagicMock(spec=MessageHandler)
    handler = ConversationHandler(api, scheduler, messages, **kwargs)
    return handler, api, scheduler, messages


def _detail(chat_id: str = CHAT_ID, title: str = "Recipes") -> dict:
    return {
        "conversation_id": chat_id,
        "title": title,
        "mapping": {
            "client-created-root": {"parent": None, "children": ["u1"], "message": None},
            "u1": {
                "parent": "client-created-root",
                "children": ["a1"],
                "message": {
                    "id": "u1",
                    "author": {"role": "user"},
                    "content": {"content_type": "text", "parts": ["Soup ideas?"]},
                },
            },
            "a1": {
                "parent": "u1",
                "children": [],
                "message": {
                    "id": "a1",
                    "author": {"role": "assistant"},
                    "content": {"content_type": "text", "parts": ["Minestrone."]},
                },
            },
        },
    }


def _saved_titles(api: AsyncMock) -> list[tuple[str, str]]:
    return [
        (c.args[0].provider_chat_id, c.args[0].title)
        for c in api.save_chat.await_args_list
    ]


# =========================================================================
# ConversationHandler
# =========================================================================


class TestTitles:
    @pytest.mark.asyncio
    async def test_placeholder_and_repeat_titles_not_forwarded(self):
        handler, api, _, _ = _make_handler()
        handler.set_current_chat_id(CHAT_ID)

        assert handler.update_chat_title("New chat") is False
        assert handler.update_chat_title("New chat") is False
        assert handler.update_chat_title("Recipes") is True
        assert handler.update_chat_title("Recipes") is False
        await handler.drain()

        assert _saved_titles(api) == [(CHAT_ID, "Recipes")]
        assert handler.current_chat_title == "Recipes"

    @pytest.mark.asyncio
    async def test_title_without_active_chat_not_forwarded(self):
        handler, api, _, _ = _make_handler()

        assert handler.update_chat_title("Recipes") is False
        await handler.drain()

        api.save_chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_background_save_failure_only_logged(self):
        handler, api, _, _ = _make_handler()
        api.save_chat.side_effect = RemoteStoreError(500, "boom")
        handler.set_current_chat_id(CHAT_ID)

        handler.update_chat_title("Recipes")
        await handler.drain()

        api.save_chat.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_title_read_from_dom_on_navigation(self):
        page = f'<nav><a href="/c/{CHAT_ID}"><div title="Soups">Soups</div></a></nav>'
        handler, api, _, _ = _make_handler(page_source=lambda: page)

        handler.set_current_chat_id(CHAT_ID)
        await handler.drain()

        assert handler.current_chat_title == "Soups"
        assert _saved_titles(api) == [(CHAT_ID, "Soups")]


class TestNavigation:
    @pytest.mark.asyncio
    async def test_navigation_resets_title_and_notifies(self):
        handler, _, _, _ = _make_handler()
        updates = []
        handler.on_chat_change(updates.append)

        handler.set_current_chat_id("c-1")
        handler.update_chat_title("First")
        handler.set_current_chat_id("c-2")
        await handler.drain()

        assert handler.current_chat_id == "c-2"
        assert handler.current_chat_title == "untitled"
        assert [(u.chat_id, u.title) for u in updates] == [
            ("c-1", "untitled"),
            ("c-1", "First"),
            ("c-2", "untitled"),
        ]

    @pytest.mark.asyncio
    async def test_same_chat_is_a_no_op(self):
        handler, _, _, _ = _make_handler()
        updates = []
        handler.on_chat_change(updates.append)

        handler.set_current_chat_id("c-1")
        handler.set_current_chat_id("c-1")

        assert len(updates) == 1

    @pytest.mark.asyncio
    async def test_proactive_fetch_feeds_messages(self):
        fetcher = AsyncMock(return_value=_detail())
        handler, _, scheduler, messages = _make_handler(detail_fetcher=fetcher)

        handler.set_current_chat_id(CHAT_ID)
        await handler.drain()

        fetcher.assert_awaited_once_with(CHAT_ID)
        scheduler.queue_chat.assert_called_once_with(CHAT_ID, "Recipes")
        ids = [c.args[0].message_id for c in messages.process_message.call_args_list]
        assert ids == ["u1", "a1"]
        assert handler.current_chat_title == "Recipes"

    @pytest.mark.asyncio
    async def test_fetch_failure_is_tolerated(self):
        fetcher = AsyncMock(side_effect=NetworkFailure("offline"))
        handler, _, _, messages = _make_handler(detail_fetcher=fetcher)

        assert await handler.fetch_conversation(CHAT_ID) is False
        messages.process_message.assert_not_called()


class TestConversationPayloads:
    @pytest.mark.asyncio
    async def test_detail_processed_once(self):
        handler, _, scheduler, messages = _make_handler()

        assert handler.process_conversation_detail(_detail()) is True
        assert handler.process_conversation_detail(_detail()) is False

        assert scheduler.queue_chat.call_count == 1
        assert messages.process_message.call_count == 2

    @pytest.mark.asyncio
    async def test_detail_with_placeholder_title_not_queued(self):
        handler, _, scheduler, _ = _make_handler()

        handler.process_conversation_detail(_detail(title="New chat"))

        scheduler.queue_chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetched_conversation_skipped_on_revisit(self):
        fetcher = AsyncMock(return_value=_detail())
        handler, _, _, _ = _make_handler(detail_fetcher=fetcher)

        handler.set_current_chat_id(CHAT_ID)
        await handler.drain()
        handler.set_current_chat_id("c-other")
        handler.set_current_chat_id(CHAT_ID)
        await handler.drain()

        fetcher.assert_any_await(CHAT_ID)
        assert [c.args[0] for c in fetcher.await_args_list].count(CHAT_ID) == 1

    @pytest.mark.asyncio
    async def test_list_forwarded_as_single_batch(self):
        handler, api, _, _ = _make_handler()
        handler.set_current_chat_id("b")
        body = {"items": [{"id": "a", "title": "Alpha"}, {"id": "b", "title": "Beta"}]}

        chats = await handler.process_conversation_list(body)
        await handler.drain()

        assert [c.id for c in chats] == ["a", "b"]
        api.save_chat_batch.assert_awaited_once()
        records = api.save_chat_batch.await_args.args[0]
        assert [(r.provider_chat_id, r.title) for r in records] == [
            ("a", "Alpha"),
            ("b", "Beta"),
        ]
        assert handler.current_chat_title == "Beta"
        api.save_chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_delivery_failure_swallowed(self):
        handler, api, _, _ = _make_handler()
        api.save_chat_batch.side_effect = NetworkFailure("offline")

        chats = await handler.process_conversation_list({"items": [{"id": "a"}]})

        assert [c.id for c in chats] == ["a"]

    @pytest.mark.asyncio
    async def test_empty_list_not_forwarded(self):
        handler, api, _, _ = _make_handler()

        assert await handler.process_conversation_list({"items": []}) == []
        api.save_chat_batch.assert_not_awaited()


# =========================================================================
# ConversationListService
# =========================================================================


class TestConversationListService:
    @pytest.mark.asyncio
    async def test_list_cached_and_reforwarded_on_next_start(self, tmp_path):
        backend = FileCacheBackend(tmp_path / "cache.json")
        store = ConversationStore(backend, "test")

        handler, _, _, _ = _make_handler()
        service = ConversationListService(store, handler)
        await service.initialize()
        assert service.fetched is False

        await service.process_list({"items": [{"id": "a", "title": "Alpha"}]})
        assert service.get("a").title == "Alpha"
        await service.cleanup()

        next_handler, next_api, _, _ = _make_handler()
        restarted = ConversationListService(store, next_handler)
        await restarted.initialize()

        assert restarted.fetched is True
        assert [c.id for c in restarted.chats] == ["a"]
        records = next_api.save_chat_batch.await_args.args[0]
        assert [r.provider_chat_id for r in records] == ["a"]

    @pytest.mark.asyncio
    async def test_last_title_wins_across_pages(self, tmp_path):
        store = ConversationStore(FileCacheBackend(tmp_path / "cache.json"), "test")
        handler, _, _, _ = _make_handler()
        service = ConversationListService(store, handler)

        await service.process_list({"items": [{"id": "a", "title": "Old"}]})
        await service.process_list(
            {"items": [{"id": "a", "title": "New"}, {"id": "b", "title": "B"}]}
        )

        assert {c.id: c.title for c in service.chats} == {"a": "New", "b": "B"}
        assert {c.id: c.title for c in await store.load()} == {"a": "New", "b": "B"}

    @pytest.mark.asyncio
    async def test_refresh_clears_cache(self, tmp_path):
        store = ConversationStore(FileCacheBackend(tmp_path / "cache.json"), "test")
        handler, _, _, _ = _make_handler()
        service = ConversationListService(store, handler)
        await service.process_list({"items": [{"id": "a", "title": "A"}]})

        await service.refresh()

        assert service.chats == []
        assert service.fetched is False
        assert await store.load() == []


# =========================================================================
# UserHandler
# =========================================================================


class TestUserHandler:
    @pytest.mark.asyncio
    async def test_saved_once_per_distinct_user(self):
        api = AsyncMock(spec=RemoteStoreApi)
        users = UserHandler(api)
        body = {"id": "user-1", "email": "ada@example.com"}

        first = await users.process_user_info(body)
        await users.process_user_info(body)

        assert first.name == "ada"
        api.save_user_metadata.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_save_failure_is_best_effort(self):
        api = AsyncMock(spec=RemoteStoreApi)
        api.save_user_metadata.side_effect = RemoteStoreError(500, "down")

        user = await UserHandler(api).process_user_info(
            {"id": "user-1", "email": "ada@example.com"}
        )

        assert user.id == "user-1"

    @pytest.mark.asyncio
    async def test_unusable_payload_ignored(self):
        api = AsyncMock(spec=RemoteStoreApi)

        assert await UserHandler(api).process_user_info({"id": "x"}) is None
        api.save_user_metadata.assert_not_awaited()
