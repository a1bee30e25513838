"""Host account metadata capture."""

from __future__ import annotations

import logging
from typing import Any

from chatcapture.gateway.models import UserMetadata
from chatcapture.gateway.remote_store import RemoteStoreApi

from .parsers import user_from_info

logger = logging.getLogger(__name__)


class UserHandler:
    def __init__(self, api: RemoteStoreApi) -> None:
        self._api = api
        self.user: UserMetadata | None = None

    async def process_user_info(self, body: Any) -> UserMetadata | None:
        """Normalise and save the host's user payload, best-effort."""
        user = user_from_info(body)
        if user is None:
            return None
        if user == self.user:
            return user
        self.user = user
        try:
            await self._api.save_user_metadata(user)
        except Exception as exc:
            logger.warning("Could not save user metadata: %s", exc)
        else:
            logger.info("Saved user metadata for %s", user.id)
        return user
