"""Global exception handlers for remote store failures."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatcapture.gateway.exceptions import (
    AuthenticationError,
    NetworkFailure,
    RemoteStoreError,
)

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Map gateway errors raised inside routes to JSON responses."""

    @app.exception_handler(AuthenticationError)
    async def handle_auth_error(
        request: Request, exc: AuthenticationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"detail": str(exc), "code": "REMOTE_AUTH_FAILED"},
        )

    @app.exception_handler(RemoteStoreError)
    async def handle_remote_store_error(
        request: Request, exc: RemoteStoreError
    ) -> JSONResponse:
        logger.warning("Remote store answered %d: %s", exc.status_code, exc.detail)
        return JSONResponse(
            status_code=502,
            content={
                "detail": exc.detail,
                "code": "REMOTE_STORE_ERROR",
                "upstream_status": exc.status_code,
            },
        )

    @app.exception_handler(NetworkFailure)
    async def handle_network_failure(
        request: Request, exc: NetworkFailure
    ) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "code": "REMOTE_UNREACHABLE"},
            headers={"Retry-After": "5"},
        )
