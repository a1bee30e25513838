"""Tests for host payload normalisation, DOM reading and URL classification."""

from __future__ import annotations

from unittest.mock import MagicMock

from chatcapture.capture.dom import (
    DomMessageObserver,
    messages_from_html,
    title_from_html,
)
from chatcapture.capture.endpoints import Endpoint, EndpointClassifier, chat_id_from_url
from chatcapture.capture.messages import MessageHandler
from chatcapture.capture.parsers import (
    chat_from_detail,
    chats_from_list,
    messages_from_detail,
    user_from_info,
)
from chatcapture.configs.system import HostConfig

CHAT_ID = "6f1c2a3b-0000-4000-8000-1234567890ab"

# =========================================================================
# Fixtures
# =========================================================================


def _node(node_id, parent, children, *, role=None, text=None, **extra):
    message = None
    if role is not None:
        message = {
            "id": node_id,
            "author": {"role": role},
            "content": {"content_type": extra.pop("content_type", "text"), "parts": [text]},
            "metadata": extra.pop("metadata", {}),
            "create_time": 1_700_000_000,
        }
    return {"id": node_id, "parent": parent, "children": children, "message": message}


def _detail() -> dict:
    mapping = {
        "client-created-root": _node("client-created-root", None, ["sys"]),
        "sys": _node(
            "sys",
            "client-created-root",
            ["u1"],
            role="system",
            text="You are helpful",
        ),
        "u1": _node("u1", "sys", ["a1"], role="user", text="What is 2+2?"),
        "a1": _node(
            "a1",
            "u1",
            ["hidden", "u2"],
            role="assistant",
            text="4",
            metadata={"model_slug": "gpt-4o"},
        ),
        "hidden": _node(
            "hidden",
            "a1",
            [],
            role="assistant",
            text="context",
            metadata={"is_visually_hidden_from_conversation": True},
        ),
        "u2": _node("u2", "a1", ["tool"], role="user", text="Thanks"),
        "tool": _node("tool", "u2", ["code"], role="tool", text="tool output"),
        "code": _node(
            "code", "tool", [], role="assistant", text="print(1)", content_type="code"
        ),
    }
    return {"conversation_id": CHAT_ID, "title": "Arithmetic", "mapping": mapping}


# =========================================================================
# Conversation payloads
# =========================================================================


class TestConversationList:
    def test_items_parsed(self):
        body = {
            "items": [
                {"id": "a", "title": "First", "update_time": 1.0},
                {"id": "b", "title": None},
                {"title": "no id"},
                "junk",
            ]
        }

        chats = chats_from_list(body)

        assert [(c.id, c.title) for c in chats] == [("a", "First"), ("b", "Chat b")]
        assert chats[0].update_time == 1.0

    def test_unexpected_shapes(self):
        assert chats_from_list(None) == []
        assert chats_from_list({"items": "nope"}) == []
        assert chats_from_list([]) == []


class TestConversationDetail:
    def test_chat_info(self):
        chat = chat_from_detail(_detail())
        assert chat.id == CHAT_ID
        assert chat.title == "Arithmetic"

    def test_chat_info_default_title(self):
        chat = chat_from_detail({"id": CHAT_ID})
        assert chat.title == "Chat 6f1c2a3b"

    def test_chat_info_without_id(self):
        assert chat_from_detail({"title": "x"}) is None

    def test_walk_yields_visible_user_and_assistant_turns(self):
        events = messages_from_detail(_detail())

        assert [(e.type, e.message_id, e.content) for e in events] == [
            ("user", "u1", "What is 2+2?"),
            ("assistant", "a1", "4"),
            ("user", "u2", "Thanks"),
        ]
        assert all(e.conversation_id == CHAT_ID for e in events)
        assert events[1].model == "gpt-4o"
        assert events[0].timestamp.year == 2023

    def test_walk_without_synthetic_root(self):
        mapping = {
            "u1": _node("u1", "gone", ["a1"], role="user", text="hi"),
            "a1": _node("a1", "u1", [], role="assistant", text="hello"),
        }

        events = messages_from_detail({"id": CHAT_ID, "mapping": mapping})

        assert [e.message_id for e in events] == ["u1", "a1"]

    def test_cycle_does_not_loop(self):
        mapping = {
            "root": {"id": "root", "parent": None, "children": ["u1"], "message": None},
            "u1": _node("u1", "root", ["u1"], role="user", text="again"),
        }

        events = messages_from_detail({"id": CHAT_ID, "mapping": mapping})

        assert [e.message_id for e in events] == ["u1"]

    def test_missing_mapping(self):
        assert messages_from_detail({"id": CHAT_ID}) == []
        assert messages_from_detail("nope") == []


class TestUserInfo:
    def test_full_payload(self):
        user = user_from_info(
            {
                "id": "user-1",
                "email": "ada@example.com",
                "name": "Ada",
                "picture": "https://img/ada.png",
                "orgs": {"data": [{"title": "Analytical Engines"}]},
            }
        )

        assert user.id == "user-1"
        assert user.name == "Ada"
        assert user.picture == "https://img/ada.png"
        assert user.org_name == "Analytical Engines"
        assert user.phone_number is None

    def test_name_defaults_to_email_local_part(self):
        user = user_from_info({"id": "user-1", "email": "ada@example.com"})
        assert user.name == "ada"
        assert user.org_name is None

    def test_requires_id_and_email(self):
        assert user_from_info({"id": "user-1"}) is None
        assert user_from_info({"email": "ada@example.com"}) is None
        assert user_from_info(None) is None


# =========================================================================
# DOM
# =========================================================================

_PAGE = f"""
<html><body>
  <nav>
    <a href="/c/other"><div title="Other chat">Other chat</div></a>
    <a href="/c/{CHAT_ID}"><div title="Trip planning">Trip planning</div></a>
  </nav>
  <main>
    <div data-message-id="u1" data-message-author-role="user"><p>Plan a trip</p></div>
    <div data-message-id="a1" data-message-author-role="assistant">
      <p>Day 1</p><p>Day 2</p>
    </div>
    <div data-message-id="s1" data-message-author-role="system">hidden</div>
    <div data-message-id="e1" data-message-author-role="assistant">   </div>
  </main>
</body></html>
"""


class TestDom:
    def test_sidebar_title(self):
        assert title_from_html(_PAGE, CHAT_ID) == "Trip planning"

    def test_link_text_fallback(self):
        html = f'<a href="/c/{CHAT_ID}">Linked title</a>'
        assert title_from_html(html, CHAT_ID) == "Linked title"

    def test_title_not_rendered(self):
        assert title_from_html(_PAGE, "missing") is None
        assert title_from_html("", CHAT_ID) is None

    def test_unsafe_chat_id_rejected(self):
        assert title_from_html(_PAGE, 'x"] , a[href') is None

    def test_rendered_messages(self):
        events = messages_from_html(_PAGE)

        assert [(e.type, e.message_id) for e in events] == [
            ("user", "u1"),
            ("assistant", "a1"),
        ]
        assert events[1].content == "Day 1\nDay 2"
        assert events[0].conversation_id is None

    def test_observer_feeds_handler(self):
        handler = MagicMock(spec=MessageHandler)
        observer = DomMessageObserver(lambda: _PAGE, handler)

        assert observer.scan() == 2
        assert handler.process_message.call_count == 2

    def test_observer_survives_page_source_error(self):
        def broken():
            raise RuntimeError("page gone")

        handler = MagicMock(spec=MessageHandler)

        assert DomMessageObserver(broken, handler).scan() == 0
        handler.process_message.assert_not_called()


# =========================================================================
# URL classification
# =========================================================================


class TestEndpointClassifier:
    def setup_method(self):
        self.classifier = EndpointClassifier(HostConfig())

    def test_completion(self):
        assert (
            self.classifier.classify("https://chatgpt.com/backend-api/conversation")
            is Endpoint.CHAT_COMPLETION
        )
        assert (
            self.classifier.classify("https://api.openai.com/v1/chat/completions")
            is Endpoint.CHAT_COMPLETION
        )

    def test_detail_checked_before_completion(self):
        url = f"https://chatgpt.com/backend-api/conversation/{CHAT_ID}"
        assert self.classifier.classify(url) is Endpoint.CONVERSATION_DETAIL

    def test_list(self):
        url = "https://chatgpt.com/backend-api/conversations?offset=0&limit=28"
        assert self.classifier.classify(url) is Endpoint.CONVERSATION_LIST

    def test_user_info(self):
        assert (
            self.classifier.classify("https://chatgpt.com/backend-api/me")
            is Endpoint.USER_INFO
        )

    def test_unrelated(self):
        assert self.classifier.classify("https://chatgpt.com/backend-api/models") is None
        assert self.classifier.classify("https://example.com/") is None

    def test_matches_predicate(self):
        is_list = self.classifier.matches(Endpoint.CONVERSATION_LIST)
        assert is_list("https://chatgpt.com/backend-api/conversations")
        assert not is_list("https://chatgpt.com/backend-api/me")

    def test_chat_id_from_location(self):
        assert chat_id_from_url(f"https://chatgpt.com/c/{CHAT_ID}?model=x") == CHAT_ID
        assert chat_id_from_url("https://chatgpt.com/") is None
        assert chat_id_from_url(None) is None
