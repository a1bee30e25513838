from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, Field


class RemoteStoreConfig(BaseModel):
    """Connection settings for the remote store the pipeline delivers to."""

    base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Remote store base URL (no trailing slash)",
    )
    api_token: str = Field(
        default="", description="Static bearer token for the remote store"
    )
    refresh_url: str = Field(
        default="",
        description="Token refresh endpoint; empty disables refresh-token auth",
    )
    refresh_token: str = Field(
        default="", description="Refresh token exchanged at refresh_url"
    )
    timeout: timedelta = Field(
        default=timedelta(seconds=30),
        description="Per-request timeout for remote store calls",
    )
    provider_name: str = Field(
        default="ChatGPT",
        description="Provider label attached to every saved chat",
    )


class HostConfig(BaseModel):
    """Patterns describing the observed host application."""

    chat_completion_patterns: list[str] = Field(
        default_factory=lambda: [
            "api.openai.com/v1/chat/completions",
            "chatgpt.com/backend-api/conversation",
        ],
        description="URL substrings identifying chat-completion calls",
    )
    conversation_list_pattern: str = Field(
        default="/backend-api/conversations",
        description="URL substring of the paged conversation-list endpoint",
    )
    conversation_detail_pattern: str = Field(
        default=r"/backend-api/conversation/([0-9a-fA-F-]{8,})/?$",
        description="Regex matching the conversation-detail read endpoint",
    )
    user_info_pattern: str = Field(
        default="/backend-api/me",
        description="URL substring of the user-info endpoint",
    )
    detail_url_template: str = Field(
        default="https://chatgpt.com/backend-api/conversation/{chat_id}",
        description="URL used to proactively fetch a conversation",
    )
    placeholder_titles: list[str] = Field(
        default_factory=lambda: ["New chat"],
        description="Host default titles that never trigger a chat delivery",
    )
    untitled_title: str = Field(
        default="untitled",
        description="Sentinel title used until a real one is discovered",
    )
    location_poll_interval: timedelta = Field(
        default=timedelta(seconds=1),
        description="How often the location watcher polls for navigation",
    )


class BatchConfig(BaseModel):
    """Flush policy for the batch scheduler."""

    debounce_delay: timedelta = Field(
        default=timedelta(seconds=2),
        description="Delay after the first unflushed item before a flush",
    )
    max_batch_size: int = Field(
        default=5, description="Pending message count that triggers a flush"
    )


class RetryPolicy(BaseModel):
    """Retry policy for transient network failures."""

    max_retries: int = Field(default=0, description="Additional attempts")
    step: timedelta = Field(
        default=timedelta(seconds=1), description="Base delay between attempts"
    )
    strategy: Literal["linear", "exponential"] = Field(
        default="linear", description="Delay growth between attempts"
    )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number *attempt* (1-based)."""
        base = self.step.total_seconds()
        if self.strategy == "exponential":
            return base * (2 ** (attempt - 1))
        return base * attempt


class RetryConfig(BaseModel):
    """Retry policies per call class."""

    read: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_retries=2),
        description="Idempotent reads (GET or no explicit method)",
    )
    write: RetryPolicy = Field(
        default_factory=RetryPolicy,
        description="Non-idempotent writes (never retried by default)",
    )


class DedupConfig(BaseModel):
    """Dedup ledger bounds."""

    max_entries: int = Field(
        default=100_000,
        description="Message ids remembered before the oldest are evicted",
    )


class CacheConfig(BaseModel):
    """Durable key-value cache settings."""

    backend: Literal["auto", "redis", "file"] = Field(
        default="auto",
        description="'auto' tries Redis and falls back to the local file",
    )
    redis_uri: str = Field(
        default="redis://localhost:6379", description="Redis connection URI"
    )
    file_path: str = Field(
        default=".chatcapture/cache.json",
        description="Local JSON file used when Redis is unavailable",
    )
    key_prefix: str = Field(
        default="chatcapture", description="Prefix for every cache key"
    )


class LoggingConfig(BaseModel):
    """Logging output settings."""

    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(
        default=False, description="Emit JSON lines instead of dev format"
    )


class TracingConfig(BaseModel):
    """OpenTelemetry tracing settings."""

    enabled: bool = Field(default=False, description="Enable OTLP export")
    endpoint: str = Field(default="", description="OTLP HTTP traces endpoint")
    service_name: str = Field(
        default="chatcapture", description="service.name resource attribute"
    )
    sample_rate: float = Field(
        default=1.0, description="Root sampling ratio (0.0 - 1.0)"
    )
    excluded_urls: list[str] = Field(
        default_factory=lambda: ["/health", "/metrics"],
        description="Routes excluded from HTTP instrumentation",
    )


class APIConfig(BaseModel):
    """Status and subscription API settings."""

    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8765, description="Bind port")
    subscriber_queue_size: int = Field(
        default=256,
        description="Events buffered per SSE subscriber before dropping",
    )
