"""Single entry point for every remote store call.

``RequestGateway.request`` layers three policies over a plain HTTP call:

* **Collapsing** -- identical calls (same endpoint and options) issued while
  one is in flight share that call's outcome instead of hitting the network
  again.  The in-flight entry is dropped as soon as the call settles.
* **Auth recovery** -- a 401/403 triggers exactly one token refresh and one
  retry.  A second rejection, or a failing refresh, is terminal.
* **Transient retry** -- transport errors on idempotent reads are retried
  per ``RetryConfig.read``; writes follow ``RetryConfig.write`` (no retries
  by default).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any

import httpx

from chatcapture.configs.system import RetryConfig
from chatcapture.infra.metrics import (
    GATEWAY_AUTH_REFRESHES_TOTAL,
    GATEWAY_COLLAPSED_TOTAL,
    GATEWAY_LATENCY_SECONDS,
    GATEWAY_REQUESTS_TOTAL,
    GATEWAY_RETRIES_TOTAL,
)
from chatcapture.infra.telemetry import (
    ATTR_GATEWAY_ATTEMPTS,
    ATTR_GATEWAY_ENDPOINT,
    ATTR_GATEWAY_METHOD,
    ATTR_GATEWAY_STATUS,
    SPAN_GATEWAY_REQUEST,
    tracer,
)

from .auth import TokenProvider
from .exceptions import (
    AuthenticationError,
    GatewayError,
    NetworkFailure,
    RemoteStoreError,
)
from .models import RequestOptions

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = frozenset({401, 403})
ANONYMOUS_PREFIX = "/public/"
NON_JSON_SUCCESS = {
    "success": True,
    "message": "Request successful but response was not JSON",
}

_OUTCOME_BY_ERROR: dict[type[GatewayError], str] = {
    AuthenticationError: "auth_error",
    RemoteStoreError: "http_error",
    NetworkFailure: "network_error",
}


@dataclass
class _CallAuth:
    """Refresh state shared by every network retry of one call."""

    refreshed: bool = False
    token: str | None = None


def request_signature(endpoint: str, options: RequestOptions) -> str:
    """Canonical key identifying logically identical calls."""
    payload = json.dumps(options.model_dump(mode="json"), sort_keys=True)
    return f"{endpoint}-{payload}"


class RequestGateway:
    """Collapsing, auth-recovering, retrying client for the remote store."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider | None,
        *,
        retry: RetryConfig | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._retry = retry or RetryConfig()
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def request(
        self, endpoint: str, options: RequestOptions | None = None
    ) -> Any:
        """Perform (or join) a call and return the parsed JSON result.

        Raises:
            AuthenticationError: credential missing, refresh failed, or the
                call was rejected after one refresh-and-retry.
            RemoteStoreError: non-2xx answer other than 401/403.
            NetworkFailure: transport error after the retry policy.
        """
        options = options or RequestOptions()
        key = request_signature(endpoint, options)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._execute(endpoint, options), name=f"gateway:{endpoint}"
            )
            self._in_flight[key] = task
            task.add_done_callback(partial(self._settle, key))
        else:
            GATEWAY_COLLAPSED_TOTAL.inc()
            logger.debug("Joining in-flight request %s", endpoint)

        # One caller being cancelled must not cancel the shared call.
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(self, endpoint: str, options: RequestOptions) -> Any:
        policy = self._retry.read if options.is_idempotent else self._retry.write
        started = time.monotonic()
        attempt = 0
        auth = _CallAuth()

        with tracer.start_as_current_span(SPAN_GATEWAY_REQUEST) as span:
            span.set_attribute(ATTR_GATEWAY_ENDPOINT, endpoint)
            span.set_attribute(ATTR_GATEWAY_METHOD, options.http_method)
            try:
                while True:
                    try:
                        result = await self._send_with_auth(endpoint, options, auth)
                        break
                    except httpx.TransportError as exc:
                        if attempt >= policy.max_retries:
                            raise NetworkFailure(
                                f"{options.http_method} {endpoint} failed: {exc}"
                            ) from exc
                        attempt += 1
                        delay = policy.delay_for(attempt)
                        GATEWAY_RETRIES_TOTAL.inc()
                        logger.warning(
                            "Network error on %s (attempt %d/%d), retrying in %.1fs: %s",
                            endpoint,
                            attempt,
                            policy.max_retries,
                            delay,
                            exc,
                        )
                        await asyncio.sleep(delay)
            except GatewayError as exc:
                GATEWAY_REQUESTS_TOTAL.labels(
                    outcome=_OUTCOME_BY_ERROR.get(type(exc), "http_error")
                ).inc()
                if isinstance(exc, RemoteStoreError):
                    span.set_attribute(ATTR_GATEWAY_STATUS, exc.status_code)
                raise
            finally:
                span.set_attribute(ATTR_GATEWAY_ATTEMPTS, attempt + 1)
                GATEWAY_LATENCY_SECONDS.observe(time.monotonic() - started)

        GATEWAY_REQUESTS_TOTAL.labels(outcome="ok").inc()
        return result

    async def _send_with_auth(
        self, endpoint: str, options: RequestOptions, auth: _CallAuth
    ) -> Any:
        if auth.refreshed:
            token = auth.token
        else:
            token = await self._resolve_token(endpoint, options)
        response = await self._send(endpoint, options, token)

        if response.status_code in AUTH_FAILURE_STATUSES:
            # At most one refresh per call, across network retries too.
            if auth.refreshed:
                raise AuthenticationError(
                    f"Authentication failed after retry ({response.status_code})"
                )
            logger.info(
                "Remote store rejected %s with %d, refreshing token",
                endpoint,
                response.status_code,
            )
            auth.token = await self._refresh_token()
            auth.refreshed = True
            response = await self._send(endpoint, options, auth.token)
            if response.status_code in AUTH_FAILURE_STATUSES:
                raise AuthenticationError(
                    f"Authentication failed after retry ({response.status_code})"
                )

        return self._parse(response)

    async def _resolve_token(
        self, endpoint: str, options: RequestOptions
    ) -> str | None:
        anonymous = options.allow_anonymous or endpoint.startswith(ANONYMOUS_PREFIX)
        try:
            if self._token_provider is None:
                raise AuthenticationError("No token provider configured")
            token = await self._token_provider.get_auth_token()
            if not token:
                raise AuthenticationError("No auth token available")
            return token
        except Exception as exc:
            if anonymous:
                logger.debug("Proceeding without token for %s: %s", endpoint, exc)
                return None
            if isinstance(exc, AuthenticationError):
                raise
            raise AuthenticationError(f"No auth token available: {exc}") from exc

    async def _refresh_token(self) -> str:
        if self._token_provider is None:
            raise AuthenticationError("No token provider configured")
        try:
            token = await self._token_provider.refresh_auth_token()
        except Exception as exc:
            GATEWAY_AUTH_REFRESHES_TOTAL.labels(result="error").inc()
            raise AuthenticationError(
                "Authentication failed after token refresh attempt"
            ) from exc
        GATEWAY_AUTH_REFRESHES_TOTAL.labels(result="ok").inc()
        return token

    async def _send(
        self, endpoint: str, options: RequestOptions, token: str | None
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json", **options.headers}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self._client.request(
            options.http_method,
            endpoint,
            json=options.body,
            params=options.params,
            headers=headers,
        )

    @staticmethod
    def _parse(response: httpx.Response) -> Any:
        if not response.is_success:
            detail = response.text
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("detail"):
                detail = data["detail"]
                if not isinstance(detail, str):
                    detail = json.dumps(detail)
            raise RemoteStoreError(
                response.status_code, detail or f"API error: {response.status_code}"
            )
        try:
            return response.json()
        except ValueError:
            return dict(NON_JSON_SUCCESS)
