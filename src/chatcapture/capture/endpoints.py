"""Classification of observed host URLs."""

from __future__ import annotations

import re
from enum import Enum
from urllib.parse import urlsplit

from chatcapture.configs.system import HostConfig

_CHAT_PATH = re.compile(r"/c/([^/?#]+)")


class Endpoint(str, Enum):
    CHAT_COMPLETION = "chat_completion"
    CONVERSATION_LIST = "conversation_list"
    CONVERSATION_DETAIL = "conversation_detail"
    USER_INFO = "user_info"


def chat_id_from_url(url: str | None) -> str | None:
    """The conversation id in a ``.../c/<id>`` page location."""
    if not url:
        return None
    match = _CHAT_PATH.search(urlsplit(url).path)
    return match.group(1) if match else None


class EndpointClassifier:
    """Maps a URL to the host endpoint it calls, or ``None``.

    The detail pattern is checked first because the completion and list
    patterns are prefixes of detail URLs.
    """

    def __init__(self, config: HostConfig) -> None:
        self._config = config
        self._detail = re.compile(config.conversation_detail_pattern)

    def classify(self, url: str) -> Endpoint | None:
        parts = urlsplit(url)
        path = parts.path.rstrip("/") or "/"
        target = f"{parts.netloc}{path}"

        if self._detail.search(parts.path):
            return Endpoint.CONVERSATION_DETAIL
        if path == self._config.user_info_pattern:
            return Endpoint.USER_INFO
        if path.startswith(self._config.conversation_list_pattern):
            return Endpoint.CONVERSATION_LIST
        if any(target.endswith(p) for p in self._config.chat_completion_patterns):
            return Endpoint.CHAT_COMPLETION
        return None

    def matches(self, kind: Endpoint):
        """Predicate for ``NetworkObserver.on_matching_exchange``."""
        return lambda url: self.classify(url) is kind
