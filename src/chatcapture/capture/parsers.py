"""Normalisation of host read-endpoint payloads.

All functions are pure and best-effort: unexpected shapes produce empty
results, never exceptions.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any

from chatcapture.gateway.models import UserMetadata

from .models import CAPTURED_ROLES, ChatInfo, MessageEvent

SYNTHETIC_ROOT_ID = "client-created-root"
TEXT_CONTENT_TYPE = "text"


def default_title(chat_id: str) -> str:
    return f"Chat {chat_id[:8]}"


# ---------------------------------------------------------------------------
# Conversation list
# ---------------------------------------------------------------------------


def chats_from_list(body: Any) -> list[ChatInfo]:
    """``{"items": [...]}`` -> ``ChatInfo`` list (items without an id skipped)."""
    if not isinstance(body, dict):
        return []
    items = body.get("items")
    if not isinstance(items, list):
        return []

    chats = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        chat_id = str(item["id"])
        chats.append(
            ChatInfo(
                id=chat_id,
                title=item.get("title") or default_title(chat_id),
                create_time=item.get("create_time"),
                update_time=item.get("update_time"),
            )
        )
    return chats


# ---------------------------------------------------------------------------
# Conversation detail
# ---------------------------------------------------------------------------


def chat_from_detail(body: Any) -> ChatInfo | None:
    if not isinstance(body, dict):
        return None
    chat_id = body.get("conversation_id") or body.get("id")
    if not chat_id:
        return None
    chat_id = str(chat_id)
    return ChatInfo(
        id=chat_id,
        title=body.get("title") or default_title(chat_id),
        create_time=body.get("create_time"),
        update_time=body.get("update_time"),
    )


def _is_root(node_id: str, node: dict[str, Any]) -> bool:
    return node_id == SYNTHETIC_ROOT_ID or (
        node.get("parent") is None and node.get("message") is None
    )


def _walk_order(mapping: dict[str, Any]) -> list[str]:
    """Breadth-first node order starting from the root's children."""
    roots = [nid for nid, node in mapping.items() if _is_root(nid, node)]
    if roots:
        seen = set(roots)
        queue = deque(
            child for root in roots for child in mapping[root].get("children") or []
        )
    else:
        # No synthetic root: start from nodes whose parent is unknown.
        seen = set()
        queue = deque(
            nid for nid, node in mapping.items() if node.get("parent") not in mapping
        )

    order: list[str] = []
    while queue:
        node_id = queue.popleft()
        if node_id in seen or node_id not in mapping:
            continue
        seen.add(node_id)
        order.append(node_id)
        queue.extend(mapping[node_id].get("children") or [])
    return order


def _text_of(message: dict[str, Any]) -> str:
    content = message.get("content") or {}
    if content.get("content_type") != TEXT_CONTENT_TYPE:
        return ""
    parts = content.get("parts")
    if isinstance(parts, list):
        return "\n".join(p for p in parts if isinstance(p, str)).strip()
    if isinstance(parts, str):
        return parts.strip()
    return ""


def _timestamp(value: Any) -> datetime:
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.now(timezone.utc)


def messages_from_detail(body: Any) -> list[MessageEvent]:
    """Walk a conversation's ``mapping`` tree into turn events.

    The synthetic root, non-text content, empty text and roles other than
    user/assistant are skipped.  Order is the breadth-first walk order.
    """
    chat = chat_from_detail(body)
    mapping = body.get("mapping") if isinstance(body, dict) else None
    if chat is None or not isinstance(mapping, dict):
        return []
    mapping = {k: v for k, v in mapping.items() if isinstance(v, dict)}

    events = []
    for node_id in _walk_order(mapping):
        message = mapping[node_id].get("message")
        if not isinstance(message, dict):
            continue
        role = (message.get("author") or {}).get("role")
        if role not in CAPTURED_ROLES:
            continue
        metadata = message.get("metadata") or {}
        if metadata.get("is_visually_hidden_from_conversation"):
            continue
        text = _text_of(message)
        if not text:
            continue
        events.append(
            MessageEvent(
                type=role,
                message_id=message.get("id") or node_id,
                content=text,
                timestamp=_timestamp(message.get("create_time")),
                conversation_id=chat.id,
                model=metadata.get("model_slug"),
            )
        )
    return events


# ---------------------------------------------------------------------------
# User info
# ---------------------------------------------------------------------------


def user_from_info(body: Any) -> UserMetadata | None:
    """Host account payload -> ``UserMetadata``; ``None`` without id + email."""
    if not isinstance(body, dict) or not body.get("id") or not body.get("email"):
        return None
    email = str(body["email"])

    org_name = None
    orgs = body.get("orgs")
    orgs = orgs.get("data") if isinstance(orgs, dict) else None
    if isinstance(orgs, list) and orgs and isinstance(orgs[0], dict):
        org_name = orgs[0].get("title") or None

    return UserMetadata(
        id=str(body["id"]),
        email=email,
        name=body.get("name") or email.split("@")[0],
        picture=body.get("picture") or None,
        phone_number=body.get("phone_number") or None,
        org_name=org_name,
    )
