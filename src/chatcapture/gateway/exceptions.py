"""Errors raised by the request gateway."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for every remote store call failure."""


class AuthenticationError(GatewayError):
    """Terminal authentication failure.

    Raised when no credential can be obtained for a non-anonymous call, when
    the token refresh itself fails, or when the call is rejected again after
    one refresh-and-retry cycle.  This is the one gateway error callers are
    expected to act on (e.g. prompt for sign-in).
    """


class RemoteStoreError(GatewayError):
    """The remote store answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class NetworkFailure(GatewayError):
    """Transport-level failure that outlived the retry policy."""
