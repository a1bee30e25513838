"""Pydantic models for the status and subscription API."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from chatcapture.capture.models import ChatInfo


class HealthResponse(BaseModel):
    status: Literal["ok", "starting"] = Field(description="Pipeline state")
    current_chat_id: str | None = None
    pending_chats: int = 0
    pending_messages: int = 0


class ConversationsResponse(BaseModel):
    current_chat_id: str | None = Field(description="Active conversation, if any")
    current_chat_title: str = Field(description="Title of the active conversation")
    conversations: list[ChatInfo] = Field(default_factory=list)


class FlushResponse(BaseModel):
    delivered: bool = Field(description="True when nothing is left pending")
    pending_chats: int
    pending_messages: int


class MessageEventOut(BaseModel):
    """A newly accepted turn."""

    type: Literal["message"] = "message"
    role: Literal["user", "assistant"]
    message_id: str
    conversation_id: str | None
    content: str
    model: str | None = None
    timestamp: datetime


class ChatUpdateOut(BaseModel):
    """The active conversation or its title changed."""

    type: Literal["chat"] = "chat"
    chat_id: str | None
    title: str


CaptureEvent = MessageEventOut | ChatUpdateOut


def format_sse(event: CaptureEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"
