"""Pipeline wiring and routing of observed exchanges.

``build_pipeline`` constructs every component explicitly and returns a
``CaptureService``; nothing here is a process-wide singleton.  Call
``initialize()`` to start capturing and ``cleanup()`` to stop.  Cleanup
makes a final flush and spills anything undelivered to the durable cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from chatcapture.configs.config import AppConfig
from chatcapture.gateway.auth import TokenProvider, build_token_provider
from chatcapture.gateway.client import RequestGateway
from chatcapture.gateway.remote_store import RemoteStoreApi
from chatcapture.infra.cache import CacheBackend, build_cache_backend
from chatcapture.infra.id_utils import generate_id
from chatcapture.infra.metrics import INTERCEPTOR_ERRORS_TOTAL
from chatcapture.infra.telemetry import (
    ATTR_CONVERSATION_ID,
    SPAN_CHAT_COMPLETION,
    tracer,
)

from .base import LifecycleService
from .batch import BatchScheduler
from .conversation import ConversationHandler, make_detail_fetcher
from .conversation_list import ConversationListService
from .dom import DomMessageObserver, PageSource
from .endpoints import Endpoint, EndpointClassifier, chat_id_from_url
from .interceptor import CapturedExchange, HttpxInterceptor, NetworkObserver, parse_body
from .messages import MessageHandler
from .models import ROLE_ASSISTANT, ROLE_USER, MessageEvent
from .storage import ConversationStore, PendingBatchStore
from .stream_processor import (
    StreamProcessor,
    extract_user_message,
    is_streaming_response,
)
from .users import UserHandler

logger = logging.getLogger(__name__)

LocationSource = Callable[[], str | None]


def assistant_from_json(body: Any, request_body: Any = None) -> MessageEvent | None:
    """Assistant turn from a non-streamed completion body."""
    if not isinstance(body, dict):
        return None
    request = request_body if isinstance(request_body, dict) else {}

    message = body.get("message")
    if not isinstance(message, dict):
        # Chat-completions style: {"choices": [{"message": {...}}]}
        choices = body.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
    if not isinstance(message, dict):
        return None

    content = message.get("content")
    if isinstance(content, dict):
        parts = content.get("parts") or []
        text = "\n".join(p for p in parts if isinstance(p, str))
    elif isinstance(content, str):
        text = content
    else:
        text = ""
    if not text:
        return None

    metadata = message.get("metadata") or {}
    return MessageEvent(
        type=ROLE_ASSISTANT,
        message_id=message.get("id") or body.get("id") or generate_id(ROLE_ASSISTANT),
        content=text,
        conversation_id=body.get("conversation_id") or request.get("conversation_id"),
        model=metadata.get("model_slug") or body.get("model") or request.get("model"),
    )


class CaptureService(LifecycleService):
    """Routes observed exchanges to the handlers and owns their lifecycle."""

    def __init__(
        self,
        config: AppConfig,
        *,
        observer: NetworkObserver,
        gateway: RequestGateway,
        api: RemoteStoreApi,
        cache: CacheBackend,
        scheduler: BatchScheduler,
        messages: MessageHandler,
        conversations: ConversationHandler,
        conversation_list: ConversationListService,
        users: UserHandler,
        dom_observer: DomMessageObserver | None = None,
        location_source: LocationSource | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.observer = observer
        self.gateway = gateway
        self.api = api
        self.cache = cache
        self.scheduler = scheduler
        self.messages = messages
        self.conversations = conversations
        self.conversation_list = conversation_list
        self.users = users
        self.dom_observer = dom_observer
        self._location_source = location_source
        self._classifier = EndpointClassifier(config.host)
        self._unsubscribes: list[Callable[[], None]] = []
        self._watcher: asyncio.Task[None] | None = None
        self._last_location: str | None = None

    # -- lifecycle -----------------------------------------------------------

    async def _on_initialize(self) -> None:
        await self.scheduler.initialize()
        await self.conversations.initialize()
        await self.conversation_list.initialize()

        routes = {
            Endpoint.CHAT_COMPLETION: self.handle_chat_completion,
            Endpoint.CONVERSATION_LIST: self.handle_conversation_list,
            Endpoint.CONVERSATION_DETAIL: self.handle_conversation_detail,
            Endpoint.USER_INFO: self.handle_user_info,
        }
        for kind, handler in routes.items():
            self._unsubscribes.append(
                self.observer.on_matching_exchange(
                    self._classifier.matches(kind), _guarded(handler)
                )
            )
        if isinstance(self.observer, HttpxInterceptor):
            self.observer.install()

        if self._location_source is not None:
            self._watcher = asyncio.create_task(
                self._watch_location(), name="location-watcher"
            )
        logger.info("Capture pipeline started")

    async def _on_cleanup(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
            self._watcher = None

        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        if isinstance(self.observer, HttpxInterceptor):
            self.observer.uninstall()
            await self.observer.drain()

        await self.conversation_list.cleanup()
        await self.conversations.cleanup()
        await self.scheduler.cleanup()
        await self.gateway.aclose()
        await self.cache.aclose()
        logger.info("Capture pipeline stopped")

    # -- navigation ----------------------------------------------------------

    def handle_url_change(self, url: str) -> None:
        """Host-pushed navigation; also driven by the location watcher."""
        self._last_location = url
        self.conversations.set_current_chat_id(chat_id_from_url(url))
        if self.dom_observer is not None:
            self.dom_observer.scan()

    async def _watch_location(self) -> None:
        interval = self.config.host.location_poll_interval.total_seconds()
        while True:
            try:
                await self._tick()
            except asyncio.CancelledError:
                logger.info("Location watcher cancelled, shutting down.")
                return
            except Exception:
                logger.exception("Location watcher tick failed")
            await asyncio.sleep(interval)

    async def _tick(self) -> None:
        url = self._location_source() if self._location_source else None
        if url and url != self._last_location:
            self.handle_url_change(url)
            return
        # The host renames "New chat" asynchronously; keep looking.
        self.conversations.update_title_from_dom()
        if self.dom_observer is not None:
            self.dom_observer.scan()

    # -- exchange routing ----------------------------------------------------

    async def handle_chat_completion(self, exchange: CapturedExchange) -> None:
        if exchange.method.upper() != "POST":
            return
        with tracer.start_as_current_span(SPAN_CHAT_COMPLETION) as span:
            user = extract_user_message(exchange.request_body)
            reply = None
            if exchange.status_code < 400:
                reply = await self._assistant_event(exchange)

            if user is not None:
                conversation_id = user["conversation_id"] or (
                    reply.conversation_id if reply is not None else None
                )
                self.messages.process_message(
                    MessageEvent(
                        type=ROLE_USER,
                        message_id=user["id"],
                        content=user["content"],
                        conversation_id=conversation_id,
                        model=user["model"],
                    )
                )
            if reply is not None:
                if reply.conversation_id:
                    span.set_attribute(ATTR_CONVERSATION_ID, reply.conversation_id)
                self.messages.process_message(reply)

    async def _assistant_event(self, exchange: CapturedExchange) -> MessageEvent | None:
        if is_streaming_response(exchange.headers):
            assembled = await StreamProcessor().process_stream(
                exchange.aiter_bytes(), exchange.request_body
            )
            if assembled is None:
                return None
            return MessageEvent(
                type=ROLE_ASSISTANT,
                message_id=assembled.id,
                content=assembled.content,
                conversation_id=assembled.conversation_id,
                model=assembled.model,
                thinking_time=round(time.monotonic() - exchange.started_at, 3),
            )

        if exchange.is_streaming:
            body = parse_body(b"".join([chunk async for chunk in exchange.aiter_bytes()]))
        else:
            body = exchange.response_body
        return assistant_from_json(body, exchange.request_body)

    async def handle_conversation_list(self, exchange: CapturedExchange) -> None:
        if exchange.status_code >= 400:
            return
        await self.conversation_list.process_list(await _json_body(exchange))

    async def handle_conversation_detail(self, exchange: CapturedExchange) -> None:
        if exchange.status_code >= 400 or exchange.method.upper() != "GET":
            return
        self.conversations.process_conversation_detail(await _json_body(exchange))

    async def handle_user_info(self, exchange: CapturedExchange) -> None:
        if exchange.status_code >= 400:
            return
        await self.users.process_user_info(await _json_body(exchange))


async def _json_body(exchange: CapturedExchange) -> Any:
    if exchange.is_streaming:
        return parse_body(b"".join([chunk async for chunk in exchange.aiter_bytes()]))
    return exchange.response_body


def _guarded(handler: Callable[[CapturedExchange], Any]):
    """Keep handler faults out of the host's call path."""

    async def run(exchange: CapturedExchange) -> None:
        try:
            await handler(exchange)
        except Exception:
            INTERCEPTOR_ERRORS_TOTAL.labels(stage="callback").inc()
            logger.exception("Failed to process %s", exchange.url)

    return run


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


async def build_pipeline(
    config: AppConfig,
    *,
    token_provider: TokenProvider | None = None,
    observer: NetworkObserver | None = None,
    page_source: PageSource | None = None,
    location_source: LocationSource | None = None,
    host_client: httpx.AsyncClient | None = None,
    cache: CacheBackend | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CaptureService:
    """Construct every component; the result is not yet initialised.

    ``transport`` replaces the remote store transport (tests).
    ``host_client`` enables proactive conversation fetches through the
    host's own session.
    """
    if cache is None:
        cache = await build_cache_backend(config.cache)
    prefix = config.cache.key_prefix

    gateway = RequestGateway(
        config.remote_store.base_url,
        token_provider or build_token_provider(config.remote_store),
        retry=config.retry,
        timeout=config.remote_store.timeout.total_seconds(),
        transport=transport,
    )
    api = RemoteStoreApi(gateway)
    provider = config.remote_store.provider_name

    scheduler = BatchScheduler(
        api,
        config.batch,
        provider_name=provider,
        spill_store=PendingBatchStore(cache, prefix),
    )
    messages = MessageHandler(scheduler, max_entries=config.dedup.max_entries)
    detail_fetcher = (
        make_detail_fetcher(host_client, config.host.detail_url_template)
        if host_client is not None
        else None
    )
    conversations = ConversationHandler(
        api,
        scheduler,
        messages,
        config.host,
        provider_name=provider,
        page_source=page_source,
        detail_fetcher=detail_fetcher,
    )
    messages.chat_context = conversations

    return CaptureService(
        config,
        observer=observer or HttpxInterceptor(),
        gateway=gateway,
        api=api,
        cache=cache,
        scheduler=scheduler,
        messages=messages,
        conversations=conversations,
        conversation_list=ConversationListService(
            ConversationStore(cache, prefix), conversations
        ),
        users=UserHandler(api),
        dom_observer=DomMessageObserver(page_source, messages) if page_source else None,
        location_source=location_source,
    )
