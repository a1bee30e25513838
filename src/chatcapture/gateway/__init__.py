from .auth import (
    RefreshingTokenProvider,
    StaticTokenProvider,
    TokenProvider,
    TokenUnavailable,
    build_token_provider,
)
from .client import RequestGateway, request_signature
from .exceptions import (
    AuthenticationError,
    GatewayError,
    NetworkFailure,
    RemoteStoreError,
)
from .models import (
    BatchPayload,
    ChatRecord,
    MessageRecord,
    RequestOptions,
    UserMetadata,
)
from .remote_store import RemoteStoreApi

__all__ = [
    "AuthenticationError",
    "BatchPayload",
    "ChatRecord",
    "GatewayError",
    "MessageRecord",
    "NetworkFailure",
    "RefreshingTokenProvider",
    "RemoteStoreApi",
    "RemoteStoreError",
    "RequestGateway",
    "RequestOptions",
    "StaticTokenProvider",
    "TokenProvider",
    "TokenUnavailable",
    "UserMetadata",
    "build_token_provider",
    "request_signature",
]
