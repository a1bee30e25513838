"""Status and subscription endpoints."""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from .deps import CaptureServiceDep, EventHubDep
from .models import ConversationsResponse, FlushResponse, HealthResponse
from .streaming import sse_stream

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

health_router = APIRouter(tags=["health"])
router = APIRouter(prefix="/api/v1/capture", tags=["capture"])


@health_router.get("/health")
async def health(request: Request) -> HealthResponse:
    service = getattr(request.app.state, "capture", None)
    if service is None or not service.is_initialized:
        return HealthResponse(status="starting")
    return HealthResponse(
        status="ok",
        current_chat_id=service.conversations.current_chat_id,
        pending_chats=len(service.scheduler.pending_chats),
        pending_messages=len(service.scheduler.pending_messages),
    )


@router.get("/events")
async def events(hub: EventHubDep, limit: int | None = None) -> StreamingResponse:
    """Server-Sent Events feed of accepted turns and chat changes."""
    return StreamingResponse(
        sse_stream(hub, limit=limit),
        media_type=SSE_MEDIA_TYPE,
        headers=SSE_HEADERS,
    )


@router.get("/conversations")
async def conversations(service: CaptureServiceDep) -> ConversationsResponse:
    return ConversationsResponse(
        current_chat_id=service.conversations.current_chat_id,
        current_chat_title=service.conversations.current_chat_title,
        conversations=service.conversation_list.chats,
    )


@router.post("/flush")
async def flush(service: CaptureServiceDep) -> FlushResponse:
    """Deliver everything pending now."""
    delivered = await service.scheduler.force_flush()
    return FlushResponse(
        delivered=delivered,
        pending_chats=len(service.scheduler.pending_chats),
        pending_messages=len(service.scheduler.pending_messages),
    )


@router.get("/stats")
async def stats(service: CaptureServiceDep) -> Any:
    """Proxy the remote store's per-user statistics."""
    return await service.api.get_user_stats()
