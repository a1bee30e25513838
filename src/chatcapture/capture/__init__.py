"""Capture-and-sync pipeline.

Observed traffic flows leaf-first through:

1. **HttpxInterceptor** -- wraps the host's httpx ``send`` methods and hands
   matching request/response pairs to subscribers.
2. **StreamProcessor** -- assembles streamed assistant replies.
3. **ConversationHandler** -- owns the active conversation and its title.
4. **MessageHandler** -- dedup ledger and ingestion boundary for turns.
5. **BatchScheduler** -- debounce/size flush policy with whole-batch
   delivery semantics.

``build_pipeline`` wires them into a ``CaptureService``.
"""

from .batch import BatchScheduler, DeliveryFailed
from .conversation import ConversationHandler
from .conversation_list import ConversationListService
from .interceptor import CapturedExchange, HttpxInterceptor, NetworkObserver
from .messages import DedupLedger, MessageHandler
from .models import AssistantStreamMessage, ChatInfo, ChatUpdate, MessageEvent
from .service import CaptureService, build_pipeline
from .stream_processor import StreamProcessor

__all__ = [
    "AssistantStreamMessage",
    "BatchScheduler",
    "CaptureService",
    "CapturedExchange",
    "ChatInfo",
    "ChatUpdate",
    "ConversationHandler",
    "ConversationListService",
    "DedupLedger",
    "DeliveryFailed",
    "HttpxInterceptor",
    "MessageEvent",
    "MessageHandler",
    "NetworkObserver",
    "StreamProcessor",
    "build_pipeline",
]
