"""Typed surface over the remote store endpoints."""

from __future__ import annotations

from typing import Any

from .client import RequestGateway
from .models import (
    BatchPayload,
    ChatRecord,
    MessageRecord,
    RequestOptions,
    UserMetadata,
)

POST = "POST"


class RemoteStoreApi:
    """Every remote store call funnels through one ``RequestGateway``."""

    def __init__(self, gateway: RequestGateway) -> None:
        self._gateway = gateway

    async def _post(self, endpoint: str, body: Any = None) -> Any:
        return await self._gateway.request(
            endpoint, RequestOptions(method=POST, body=body)
        )

    # Messages -----------------------------------------------------------

    async def save_message(self, record: MessageRecord) -> Any:
        return await self._post("/save/message", record.model_dump())

    async def save_message_batch(self, records: list[MessageRecord]) -> Any:
        return await self._post(
            "/save/batch/message", {"messages": [r.model_dump() for r in records]}
        )

    # Chats --------------------------------------------------------------

    async def save_chat(self, record: ChatRecord) -> Any:
        return await self._post("/save/chat", record.model_dump())

    async def save_chat_batch(self, records: list[ChatRecord]) -> Any:
        return await self._post(
            "/save/batch/chat", {"chats": [r.model_dump() for r in records]}
        )

    async def save_batch(self, payload: BatchPayload) -> Any:
        """Deliver chats and messages in one call."""
        return await self._post("/save/batch", payload.model_dump())

    # Users --------------------------------------------------------------

    async def save_user_metadata(self, metadata: UserMetadata) -> Any:
        return await self._post("/save/user_metadata", metadata.model_dump())

    async def get_user_stats(self) -> Any:
        return await self._gateway.request("/stats/user")

    async def track_template_usage(self, template_id: str) -> Any:
        return await self._post(f"/prompt-templates/use-template/{template_id}")

    # Notifications ------------------------------------------------------

    async def get_notifications(self) -> Any:
        return await self._gateway.request("/notifications/")

    async def get_unread_notifications(self) -> Any:
        return await self._gateway.request("/notifications/unread")

    async def get_notification_count(self) -> Any:
        return await self._gateway.request("/notifications/count")

    async def mark_notification_read(self, notification_id: str) -> Any:
        return await self._gateway.request(
            f"/notifications/{notification_id}/read", RequestOptions(method=POST)
        )

    async def mark_all_notifications_read(self) -> Any:
        return await self._gateway.request(
            "/notifications/read-all", RequestOptions(method=POST)
        )
