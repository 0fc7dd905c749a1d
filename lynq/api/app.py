"""FastAPI application factory for the Lynq probe, metrics and webhook server.

Usage::

    from lynq.api.app import create_app

    app = create_app(manager=manager, client=client, config=config)

The factory is used by both the production bootstrap (``lynq.app``) and
unit tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lynq.api.routes import router
from lynq.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")


def create_app(manager: Any = None, client: Any = None, config: Any = None) -> FastAPI:
    """Create and configure the Lynq FastAPI application.

    Args:
        manager: ControllerManager; ``/readyz`` reports its initial sync.
                 None means always ready.
        client:  KubeClient used by the webhook to check that the referenced
                 hub exists.  None skips that check.
        config:  LynqConfig, kept for handlers that need it.
    """
    from lynq import __version__

    app = FastAPI(
        title="Lynq",
        summary="Lynq controller probes, metrics and admission webhook",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    app.state.manager = manager
    app.state.client = client
    app.state.config = config

    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first_msg = str(errors[0].get("msg", "")) if errors else ""
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=first_msg).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="INTERNAL_ERROR", detail="An unexpected error occurred.").model_dump(),
        )

    return app
