"""Reading conversation state out of the host's rendered page.

The page is an HTML snapshot returned by a ``page_source`` callable.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup

from .models import CAPTURED_ROLES, MessageEvent

if TYPE_CHECKING:
    from .messages import MessageHandler

logger = logging.getLogger(__name__)

PageSource = Callable[[], str | None]

_SAFE_CHAT_ID = re.compile(r"^[\w-]+$")
MESSAGE_SELECTOR = "[data-message-id][data-message-author-role]"


def title_from_html(html: str, chat_id: str) -> str | None:
    """Sidebar title of *chat_id*, or ``None`` if it is not rendered."""
    if not html or not chat_id or not _SAFE_CHAT_ID.match(chat_id):
        return None
    soup = BeautifulSoup(html, "html.parser")
    href = f'a[href="/c/{chat_id}"]'

    node = soup.select_one(f"nav {href} div[title]")
    if node is not None:
        title = (node.get("title") or node.get_text(strip=True)).strip()
        if title:
            return title

    link = soup.select_one(href)
    if link is not None:
        title = link.get_text(strip=True)
        if title:
            return title
    return None


def messages_from_html(html: str) -> list[MessageEvent]:
    """Rendered turns in document order; conversation id left unset."""
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    events = []
    for node in soup.select(MESSAGE_SELECTOR):
        role = node.get("data-message-author-role")
        message_id = node.get("data-message-id")
        if role not in CAPTURED_ROLES or not message_id:
            continue
        text = node.get_text("\n", strip=True)
        if not text:
            continue
        events.append(MessageEvent(type=role, message_id=message_id, content=text))
    return events


class DomMessageObserver:
    """Feeds rendered turns to the message handler.

    Rescanning the same page is harmless; the handler's dedup ledger makes
    ingestion idempotent.
    """

    def __init__(self, page_source: PageSource, handler: MessageHandler) -> None:
        self._page_source = page_source
        self._handler = handler

    def scan(self) -> int:
        """Process every rendered turn; returns how many were seen."""
        try:
            html = self._page_source()
            events = messages_from_html(html or "")
        except Exception:
            logger.warning("DOM message scan failed", exc_info=True)
            return 0
        for event in events:
            self._handler.process_message(event)
        return len(events)
