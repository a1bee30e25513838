"""Prometheus metrics for the capture pipeline.

All metrics use the ``chatcapture_`` prefix.  HTTP metrics for the status
API come from ``prometheus-fastapi-instrumentator`` (see ``api.app``).
"""

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

GATEWAY_REQUESTS_TOTAL = Counter(
    "chatcapture_gateway_requests_total",
    "Remote store calls by outcome",
    ["outcome"],  # ok | http_error | auth_error | network_error
)

GATEWAY_COLLAPSED_TOTAL = Counter(
    "chatcapture_gateway_collapsed_total",
    "Calls served by an identical in-flight request",
)

GATEWAY_AUTH_REFRESHES_TOTAL = Counter(
    "chatcapture_gateway_auth_refreshes_total",
    "Token refresh attempts triggered by 401/403",
    ["result"],  # ok | error
)

GATEWAY_RETRIES_TOTAL = Counter(
    "chatcapture_gateway_retries_total",
    "Retries after transient network failures",
)

GATEWAY_LATENCY_SECONDS = Histogram(
    "chatcapture_gateway_latency_seconds",
    "Latency of a single remote store call (including retries)",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

BATCH_FLUSHES_TOTAL = Counter(
    "chatcapture_batch_flushes_total",
    "Batch flush attempts by outcome",
    ["outcome"],  # ok | error
)

BATCH_FLUSH_SIZE = Histogram(
    "chatcapture_batch_flush_size",
    "Number of messages delivered per flush",
    buckets=(0, 1, 2, 5, 10, 25, 50, 100),
)

BATCH_PENDING = Gauge(
    "chatcapture_batch_pending",
    "Items waiting for delivery",
    ["kind"],  # chats | messages
)

# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

MESSAGES_ACCEPTED_TOTAL = Counter(
    "chatcapture_messages_accepted_total",
    "Messages accepted into the dedup ledger",
    ["role"],
)

MESSAGES_DUPLICATE_TOTAL = Counter(
    "chatcapture_messages_duplicate_total",
    "Messages ignored because their id was already accepted",
)

MESSAGES_UNATTRIBUTED_TOTAL = Counter(
    "chatcapture_messages_unattributed_total",
    "Messages dropped because no conversation id was available",
)

CHATS_FORWARDED_TOTAL = Counter(
    "chatcapture_chats_forwarded_total",
    "Chat records forwarded for delivery",
    ["source"],  # title | list | detail | cache
)

# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

STREAM_FRAMES_SKIPPED_TOTAL = Counter(
    "chatcapture_stream_frames_skipped_total",
    "Stream frames discarded because they could not be parsed",
)

STREAMS_ASSEMBLED_TOTAL = Counter(
    "chatcapture_streams_assembled_total",
    "Streamed replies by assembly result",
    ["result"],  # ok | unrecognised | read_error
)

INTERCEPTOR_ERRORS_TOTAL = Counter(
    "chatcapture_interceptor_errors_total",
    "Errors caught on the interception path",
    ["stage"],  # capture | callback
)
