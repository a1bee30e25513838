"""FastAPI dependency aliases.

Each ``*Dep`` alias maps to one ``get_*`` accessor over ``app.state`` and
can be overridden in tests via ``app.dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from chatcapture.capture.service import CaptureService

from .streaming import EventHub


def get_capture_service(request: Request) -> CaptureService:
    service = getattr(request.app.state, "capture", None)
    if service is None or not service.is_initialized:
        raise HTTPException(status_code=503, detail="Capture pipeline not running")
    return service


def get_event_hub(request: Request) -> EventHub:
    return request.app.state.event_hub


CaptureServiceDep = Annotated[CaptureService, Depends(get_capture_service)]
EventHubDep = Annotated[EventHub, Depends(get_event_hub)]
