"""Tracing for the capture pipeline.

``tracer`` is importable at any time.  Until :func:`init_telemetry` installs
an SDK provider it hands out non-recording spans, so components can open
spans unconditionally::

    with tracer.start_as_current_span(SPAN_BATCH_FLUSH) as span:
        span.set_attribute(ATTR_BATCH_MESSAGES, len(payload.messages))
"""

from __future__ import annotations

import logging

from opentelemetry import trace

from chatcapture.configs.system import TracingConfig

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("chatcapture")

# Span names
SPAN_GATEWAY_REQUEST = "gateway.request"
SPAN_BATCH_FLUSH = "batch.flush"
SPAN_STREAM_ASSEMBLE = "stream.assemble"
SPAN_CONVERSATION_FETCH = "conversation.fetch"
SPAN_CHAT_COMPLETION = "capture.chat_completion"

# Attribute keys: gateway
ATTR_GATEWAY_ENDPOINT = "gateway.endpoint"
ATTR_GATEWAY_METHOD = "gateway.method"
ATTR_GATEWAY_STATUS = "gateway.status"
ATTR_GATEWAY_ATTEMPTS = "gateway.attempts"

# Attribute keys: batching
ATTR_BATCH_CHATS = "batch.chats"
ATTR_BATCH_MESSAGES = "batch.messages"
ATTR_BATCH_OUTCOME = "batch.outcome"

# Attribute keys: stream assembly
ATTR_STREAM_FRAMES = "stream.frames"
ATTR_STREAM_SKIPPED = "stream.skipped"
ATTR_STREAM_RECOGNISED = "stream.recognised"

ATTR_CONVERSATION_ID = "conversation.id"


def _build_provider(settings: TracingConfig):
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.service_name}),
        sampler=ParentBased(root=TraceIdRatioBased(settings.sample_rate)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.endpoint))
    )
    return provider


def init_telemetry(
    app: object | None = None,
    settings: TracingConfig | None = None,
) -> bool:
    """Export pipeline spans over OTLP/HTTP when tracing is configured.

    ``app``, when given, is the status API; its routes get inbound spans
    except for ``settings.excluded_urls``.  Returns ``True`` when a
    provider was installed.
    """
    if settings is None or not settings.enabled:
        logger.info("Tracing disabled")
        return False
    if not settings.endpoint:
        logger.warning("Tracing enabled without an OTLP endpoint, spans are dropped")
        return False

    trace.set_tracer_provider(_build_provider(settings))

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(
            app, excluded_urls=",".join(settings.excluded_urls)
        )

    logger.info(
        "Tracing to %s as %s (sample rate %.2f)",
        settings.endpoint,
        settings.service_name,
        settings.sample_rate,
    )
    return True
