"""FastAPI application factory for fleetguard.

Usage::

    from fleetguard.api.app import create_app

    app = create_app(store=store, tracking=tracking, config=config, reconcile_loop=loop)

Used by both the production bootstrap (``fleetguard.app``) and tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from fleetguard.api.routes import router
from fleetguard.api.schemas import ErrorResponse
from fleetguard.models.config import GuardConfig

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(
    store: Any,
    tracking: Any = None,
    config: Any = None,
    reconcile_loop: Any = None,
) -> FastAPI:
    """Create and configure the fleetguard FastAPI application.

    Args:
        store:          RecordStore the endpoints read from.
        tracking:       Optional ServiceTrackingStore, adds tracking state
                        to node group responses.
        config:         FleetGuardConfig.  Used for the guard prefix.
        reconcile_loop: Optional ReconcileLoop reported by /health.
    """
    from fleetguard import __version__

    guard = config.guard if config is not None else GuardConfig()

    app = FastAPI(
        title="fleetguard",
        summary="Phased configuration rollout and credential guard status",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
    )

    app.state.store = store
    app.state.tracking = tracking
    app.state.config = config
    app.state.guard_prefix = guard.prefix
    app.state.reconcile_loop = reconcile_loop

    app.include_router(router, prefix=_API_PREFIX)
    app.mount("/metrics", make_asgi_app())

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = exc.errors()
        detail = str(errors[0].get("msg", "")) if errors else ""
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=detail).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
