"""Domain events reconstructed from observed host traffic."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
CAPTURED_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageEvent(BaseModel):
    """One observed turn.  Immutable once created."""

    model_config = ConfigDict(frozen=True)

    type: Literal["user", "assistant"]
    message_id: str = Field(description="Unique per turn; the event identity")
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    conversation_id: str | None = None
    model: str | None = None
    thinking_time: float | None = Field(
        default=None, description="Seconds from request to assembled reply"
    )


class ChatInfo(BaseModel):
    """A conversation as known to the pipeline.  Last title wins."""

    id: str
    title: str
    create_time: float | str | None = None
    update_time: float | str | None = None


class AssistantStreamMessage(BaseModel):
    """A fully assembled assistant reply."""

    id: str
    content: str
    conversation_id: str
    model: str = "unknown"


class ChatUpdate(BaseModel):
    """Notification that the active conversation or its title changed."""

    chat_id: str | None
    title: str
