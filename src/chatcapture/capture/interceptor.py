"""Observation of the host's HTTP traffic.

The rest of the pipeline depends only on the ``NetworkObserver`` protocol:
one method, ``on_matching_exchange(predicate, callback)``.  ``HttpxInterceptor``
is the concrete adapter.  It wraps the host's two call primitives:

* ``httpx.AsyncClient.send`` -- awaitable, supports streamed bodies.  A
  streamed response is handed to subscribers immediately and its chunks are
  mirrored to them as the host reads them.
* ``httpx.Client.send`` -- blocking.  Subscribers are notified once the
  whole body has been delivered to the host.

What the host sends and receives is never altered.  Every failure on the
capture side is logged and swallowed; the host's own response (or its own
exception) always comes back unchanged.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from chatcapture.infra.metrics import INTERCEPTOR_ERRORS_TOTAL

logger = logging.getLogger(__name__)

UrlPredicate = Callable[[str], bool]
ExchangeCallback = Callable[["CapturedExchange"], Any]
Unsubscribe = Callable[[], None]

_END = None


def parse_body(raw: bytes | str | None) -> Any:
    """Decode a body as JSON, falling back to the raw text."""
    if raw is None:
        return None
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


# ---------------------------------------------------------------------------
# Captured exchange
# ---------------------------------------------------------------------------


class _QueueStream(httpx.AsyncByteStream):
    def __init__(self, queue: asyncio.Queue[bytes | None]) -> None:
        self._queue = queue

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is _END:
                return
            yield chunk


class _ReplayStream(httpx.SyncByteStream):
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = chunks

    def __iter__(self) -> Iterator[bytes]:
        yield from self._chunks


@dataclass
class CapturedExchange:
    """One observed request/response pair.

    ``request_body`` and ``response_body`` hold parsed JSON when the payload
    is JSON and the raw text otherwise.  Streamed responses carry no text;
    read them with ``aiter_bytes()``.
    """

    url: str
    method: str = "GET"
    status_code: int = 200
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    request_body: Any = None
    response_text: str | None = None
    started_at: float = field(default_factory=time.monotonic)
    _chunks: asyncio.Queue[bytes | None] | None = field(default=None, repr=False)

    @property
    def is_streaming(self) -> bool:
        return self._chunks is not None

    @property
    def response_body(self) -> Any:
        return parse_body(self.response_text)

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the decoded response body, chunk by chunk."""
        if self._chunks is None:
            if self.response_text:
                yield self.response_text.encode("utf-8")
            return
        # Let httpx undo any content-encoding on the mirrored raw chunks.
        mirror = httpx.Response(
            self.status_code, headers=self.headers, stream=_QueueStream(self._chunks)
        )
        async for chunk in mirror.aiter_bytes():
            yield chunk


# ---------------------------------------------------------------------------
# Tee streams
# ---------------------------------------------------------------------------


class _RecordingAsyncStream(httpx.AsyncByteStream):
    """Request-body tee: forwards chunks to the transport, keeps a copy."""

    def __init__(self, inner: httpx.AsyncByteStream) -> None:
        self._inner = inner
        self.recorded = bytearray()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._inner:
            self.recorded.extend(chunk)
            yield chunk

    async def aclose(self) -> None:
        await self._inner.aclose()


class _RecordingSyncStream(httpx.SyncByteStream):
    def __init__(self, inner: httpx.SyncByteStream) -> None:
        self._inner = inner
        self.recorded = bytearray()

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._inner:
            self.recorded.extend(chunk)
            yield chunk

    def close(self) -> None:
        self._inner.close()


class _TeeAsyncStream(httpx.AsyncByteStream):
    """Response tee: the host reads every chunk, subscribers get copies."""

    def __init__(
        self, inner: httpx.AsyncByteStream, sinks: list[asyncio.Queue[bytes | None]]
    ) -> None:
        self._inner = inner
        self._sinks = sinks
        self._finished = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._inner:
                for sink in self._sinks:
                    sink.put_nowait(chunk)
                yield chunk
        finally:
            self._finish()

    async def aclose(self) -> None:
        try:
            await self._inner.aclose()
        finally:
            self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        for sink in self._sinks:
            sink.put_nowait(_END)


class _TeeSyncStream(httpx.SyncByteStream):
    """Blocking response tee: reports the body once fully delivered."""

    def __init__(
        self, inner: httpx.SyncByteStream, on_load: Callable[[list[bytes]], None]
    ) -> None:
        self._inner = inner
        self._on_load = on_load
        self._chunks: list[bytes] = []

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._inner:
            self._chunks.append(chunk)
            yield chunk
        self._on_load(self._chunks)

    def close(self) -> None:
        self._inner.close()


# ---------------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------------


class NetworkObserver(Protocol):
    """Narrow seam between traffic capture and the pipeline."""

    def on_matching_exchange(
        self, predicate: UrlPredicate, callback: ExchangeCallback
    ) -> Unsubscribe: ...


@dataclass
class _Subscription:
    predicate: UrlPredicate
    callback: ExchangeCallback


class HttpxInterceptor:
    """``NetworkObserver`` backed by wrappers around httpx's ``send`` methods."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._original_async_send: Callable[..., Any] | None = None
        self._original_sync_send: Callable[..., Any] | None = None
        self._async_wrapper: Callable[..., Any] | None = None
        self._sync_wrapper: Callable[..., Any] | None = None

    @property
    def installed(self) -> bool:
        return self._async_wrapper is not None

    def on_matching_exchange(
        self, predicate: UrlPredicate, callback: ExchangeCallback
    ) -> Unsubscribe:
        subscription = _Subscription(predicate, callback)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    # -- install / uninstall -----------------------------------------------

    def install(self) -> None:
        if self.installed:
            return
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        original_async = httpx.AsyncClient.send
        original_sync = httpx.Client.send
        interceptor = self

        async def async_send(
            client: httpx.AsyncClient, request: httpx.Request, *args: Any, **kwargs: Any
        ) -> httpx.Response:
            return await interceptor._intercept_async(
                original_async, client, request, args, kwargs
            )

        def sync_send(
            client: httpx.Client, request: httpx.Request, *args: Any, **kwargs: Any
        ) -> httpx.Response:
            return interceptor._intercept_sync(
                original_sync, client, request, args, kwargs
            )

        self._original_async_send = original_async
        self._original_sync_send = original_sync
        self._async_wrapper = async_send
        self._sync_wrapper = sync_send
        httpx.AsyncClient.send = async_send  # type: ignore[method-assign]
        httpx.Client.send = sync_send  # type: ignore[method-assign]
        logger.info("HTTP interception installed")

    def uninstall(self) -> None:
        if not self.installed:
            return
        # Only restore what we replaced; someone may have wrapped us since.
        if httpx.AsyncClient.send is self._async_wrapper:
            httpx.AsyncClient.send = self._original_async_send  # type: ignore[method-assign]
        if httpx.Client.send is self._sync_wrapper:
            httpx.Client.send = self._original_sync_send  # type: ignore[method-assign]
        self._async_wrapper = None
        self._sync_wrapper = None
        logger.info("HTTP interception removed")

    async def drain(self) -> None:
        """Wait for every dispatched async callback to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- interception ------------------------------------------------------

    def _matching(self, url: str) -> list[_Subscription]:
        matched = []
        for sub in list(self._subscriptions):
            try:
                if sub.predicate(url):
                    matched.append(sub)
            except Exception:
                INTERCEPTOR_ERRORS_TOTAL.labels(stage="capture").inc()
                logger.warning("URL predicate failed for %s", url, exc_info=True)
        return matched

    async def _intercept_async(
        self,
        original: Callable[..., Any],
        client: httpx.AsyncClient,
        request: httpx.Request,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        subs = self._matching(str(request.url))
        if not subs:
            return await original(client, request, *args, **kwargs)

        started = time.monotonic()
        recorder = self._record_request(request, asynchronous=True)
        response = await original(client, request, *args, **kwargs)

        try:
            exchange = self._base_exchange(request, response, recorder, started)
            if kwargs.get("stream", False):
                sinks: list[asyncio.Queue[bytes | None]] = []
                for sub in subs:
                    queue: asyncio.Queue[bytes | None] = asyncio.Queue()
                    sinks.append(queue)
                    self._dispatch(sub, _with_chunks(exchange, queue))
                response.stream = _TeeAsyncStream(response.stream, sinks)
            else:
                exchange.response_text = response.text
                for sub in subs:
                    self._dispatch(sub, exchange)
        except Exception:
            INTERCEPTOR_ERRORS_TOTAL.labels(stage="capture").inc()
            logger.warning("Failed to capture %s", request.url, exc_info=True)
        return response

    def _intercept_sync(
        self,
        original: Callable[..., Any],
        client: httpx.Client,
        request: httpx.Request,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        subs = self._matching(str(request.url))
        if not subs:
            return original(client, request, *args, **kwargs)

        started = time.monotonic()
        recorder = self._record_request(request, asynchronous=False)
        response = original(client, request, *args, **kwargs)

        try:
            exchange = self._base_exchange(request, response, recorder, started)
            if kwargs.get("stream", False):

                def on_load(chunks: list[bytes]) -> None:
                    try:
                        mirror = httpx.Response(
                            exchange.status_code,
                            headers=exchange.headers,
                            stream=_ReplayStream(chunks),
                        )
                        mirror.read()
                        exchange.response_text = mirror.text
                        for sub in subs:
                            self._dispatch(sub, exchange)
                    except Exception:
                        INTERCEPTOR_ERRORS_TOTAL.labels(stage="capture").inc()
                        logger.warning(
                            "Failed to capture %s", request.url, exc_info=True
                        )

                response.stream = _TeeSyncStream(response.stream, on_load)
            else:
                exchange.response_text = response.text
                for sub in subs:
                    self._dispatch(sub, exchange)
        except Exception:
            INTERCEPTOR_ERRORS_TOTAL.labels(stage="capture").inc()
            logger.warning("Failed to capture %s", request.url, exc_info=True)
        return response

    def _record_request(
        self, request: httpx.Request, *, asynchronous: bool
    ) -> Callable[[], Any]:
        try:
            body = request.content
        except httpx.RequestNotRead:
            pass
        else:
            return lambda: parse_body(body)

        try:
            if asynchronous and isinstance(request.stream, httpx.AsyncByteStream):
                tee: _RecordingAsyncStream | _RecordingSyncStream = (
                    _RecordingAsyncStream(request.stream)
                )
            elif not asynchronous and isinstance(request.stream, httpx.SyncByteStream):
                tee = _RecordingSyncStream(request.stream)
            else:
                return lambda: None
            request.stream = tee
        except Exception:
            INTERCEPTOR_ERRORS_TOTAL.labels(stage="capture").inc()
            logger.warning("Failed to tee request body", exc_info=True)
            return lambda: None
        return lambda: parse_body(bytes(tee.recorded))

    @staticmethod
    def _base_exchange(
        request: httpx.Request,
        response: httpx.Response,
        recorder: Callable[[], Any],
        started: float,
    ) -> CapturedExchange:
        return CapturedExchange(
            url=str(request.url),
            method=request.method,
            status_code=response.status_code,
            headers=httpx.Headers(response.headers),
            request_body=recorder(),
            started_at=started,
        )

    # -- callback dispatch -------------------------------------------------

    def _dispatch(self, sub: _Subscription, exchange: CapturedExchange) -> None:
        try:
            result = sub.callback(exchange)
        except Exception:
            INTERCEPTOR_ERRORS_TOTAL.labels(stage="callback").inc()
            logger.exception("Exchange callback failed for %s", exchange.url)
            return
        if inspect.isawaitable(result):
            self._schedule(result, exchange.url)

    def _schedule(self, awaitable: Any, url: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = asyncio.ensure_future(awaitable)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
        elif self._loop is not None and self._loop.is_running():
            # Blocking client used from a worker thread.
            asyncio.run_coroutine_threadsafe(awaitable, self._loop)
        else:
            logger.warning("No event loop to run capture callback for %s", url)
            if inspect.iscoroutine(awaitable):
                awaitable.close()

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            INTERCEPTOR_ERRORS_TOTAL.labels(stage="callback").inc()
            logger.error("Exchange callback failed", exc_info=exc)


def _with_chunks(
    exchange: CapturedExchange, queue: asyncio.Queue[bytes | None]
) -> CapturedExchange:
    return CapturedExchange(
        url=exchange.url,
        method=exchange.method,
        status_code=exchange.status_code,
        headers=exchange.headers,
        request_body=exchange.request_body,
        started_at=exchange.started_at,
        _chunks=queue,
    )
