"""Wire payloads sent to the remote store."""

from typing import Any

from pydantic import BaseModel, Field


class RequestOptions(BaseModel):
    """Options for a single gateway call."""

    method: str | None = Field(
        default=None, description="HTTP method; None means GET"
    )
    body: Any = Field(default=None, description="JSON-serialisable request body")
    params: dict[str, str] | None = Field(
        default=None, description="Query string parameters"
    )
    headers: dict[str, str] = Field(
        default_factory=dict, description="Extra request headers"
    )
    allow_anonymous: bool = Field(
        default=False,
        description="Proceed without a bearer token if none can be obtained",
    )

    @property
    def http_method(self) -> str:
        return (self.method or "GET").upper()

    @property
    def is_idempotent(self) -> bool:
        return self.http_method == "GET"


class MessageRecord(BaseModel):
    """One captured turn as stored remotely."""

    message_provider_id: str = Field(description="Host-assigned message id")
    content: str = Field(description="Message text")
    role: str = Field(description="'user' or 'assistant'")
    rank: int = Field(
        default=0, description="Observation order within the conversation"
    )
    chat_provider_id: str = Field(description="Host-assigned conversation id")
    model: str = Field(default="", description="Model slug, if known")
    thinking_time: float = Field(
        default=0.0, description="Seconds the host spent producing the reply"
    )


class ChatRecord(BaseModel):
    """One conversation as stored remotely."""

    provider_chat_id: str = Field(description="Host-assigned conversation id")
    title: str = Field(description="Conversation title")
    provider_name: str = Field(default="ChatGPT", description="Host provider")


class BatchPayload(BaseModel):
    """Combined chats + messages delivery."""

    chats: list[ChatRecord] = Field(default_factory=list)
    messages: list[MessageRecord] = Field(default_factory=list)


class UserMetadata(BaseModel):
    """Host account details forwarded once per session."""

    id: str
    email: str
    name: str
    picture: str | None = None
    phone_number: str | None = None
    org_name: str | None = None
