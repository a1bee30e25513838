"""FastAPI application exposing pipeline status and the event feed."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from chatcapture.capture.service import CaptureService, build_pipeline
from chatcapture.configs.config import AppConfig, get_app_config
from chatcapture.infra.telemetry import init_telemetry

from .exceptions import register_exception_handlers
from .routes import health_router, router
from .streaming import EventHub

PipelineFactory = Callable[[AppConfig], Awaitable[CaptureService]]


def create_app(
    config: AppConfig | None = None,
    *,
    pipeline_factory: PipelineFactory | None = None,
) -> FastAPI:
    """Create the application; the pipeline is built and started in lifespan.

    ``pipeline_factory`` replaces ``build_pipeline`` (tests, embedding hosts
    that supply their own page and location sources).
    """
    config = config or get_app_config()
    factory = pipeline_factory or build_pipeline

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        hub = EventHub(config.api.subscriber_queue_size)
        app.state.event_hub = hub
        app.state.capture = None

        service = await factory(config)
        removers = [
            service.messages.on_message(hub.on_message),
            service.conversations.on_chat_change(hub.on_chat_change),
        ]
        await service.initialize()
        app.state.capture = service
        try:
            yield
        finally:
            for remove in removers:
                remove()
            await service.cleanup()
            app.state.capture = None

    app = FastAPI(
        title="chatcapture",
        description="Capture-and-sync pipeline status and event feed",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(router)
    register_exception_handlers(app)

    Instrumentator(excluded_handlers=config.tracing.excluded_urls).instrument(
        app
    ).expose(app, endpoint="/metrics", include_in_schema=False)
    init_telemetry(app, config.tracing)
    return app
