"""Credential providers consumed by the request gateway.

The gateway only depends on the ``TokenProvider`` protocol; how a token is
obtained is opaque to it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

from chatcapture.configs.system import RemoteStoreConfig

logger = logging.getLogger(__name__)

FIELD_ACCESS_TOKEN = "access_token"
FIELD_REFRESH_TOKEN = "refresh_token"


class TokenUnavailable(Exception):
    """Raised when a provider has no credential to hand out."""


class TokenProvider(Protocol):
    """Structural protocol for bearer-token sources."""

    async def get_auth_token(self) -> str: ...

    async def refresh_auth_token(self) -> str: ...


class StaticTokenProvider:
    """Serves a fixed token; refreshing just hands the same token back."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def get_auth_token(self) -> str:
        if not self._token:
            raise TokenUnavailable("No API token configured.")
        return self._token

    async def refresh_auth_token(self) -> str:
        return await self.get_auth_token()


class RefreshingTokenProvider:
    """Exchanges a refresh token for short-lived access tokens.

    Concurrent refreshes are serialised so a burst of 401s only hits the
    refresh endpoint once per generation of token.
    """

    def __init__(
        self,
        refresh_url: str,
        refresh_token: str,
        *,
        access_token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._refresh_url = refresh_url
        self._refresh_token = refresh_token
        self._access_token = access_token
        self._timeout = timeout
        self._transport = transport
        self._lock = asyncio.Lock()

    async def get_auth_token(self) -> str:
        if self._access_token:
            return self._access_token
        return await self.refresh_auth_token()

    async def refresh_auth_token(self) -> str:
        stale = self._access_token
        async with self._lock:
            # Another caller refreshed while we were waiting.
            if self._access_token and self._access_token != stale:
                return self._access_token
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self._refresh_url,
                    json={FIELD_REFRESH_TOKEN: self._refresh_token},
                )
                response.raise_for_status()
                data = response.json()
            token = data.get(FIELD_ACCESS_TOKEN) if isinstance(data, dict) else None
            if not token:
                raise TokenUnavailable("Refresh response carried no access token.")
            self._access_token = token
            self._refresh_token = data.get(FIELD_REFRESH_TOKEN) or self._refresh_token
            logger.info("Auth token refreshed")
            return token


def build_token_provider(config: RemoteStoreConfig) -> TokenProvider:
    """Pick a provider from configuration."""
    if config.refresh_url and config.refresh_token:
        return RefreshingTokenProvider(
            config.refresh_url,
            config.refresh_token,
            access_token=config.api_token,
            timeout=config.timeout.total_seconds(),
        )
    return StaticTokenProvider(config.api_token)
