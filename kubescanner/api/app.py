"""FastAPI application serving probes and metrics.

Endpoints:
    GET /healthz -- liveness, always ``{"status": "ok"}``.
    GET /readyz  -- 200 once every controller runs, 503 before that.
    GET /metrics -- Prometheus text exposition of the scanner's registry.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CollectorRegistry

from kubescanner.observability.metrics import render_latest

_log = structlog.get_logger(component="api.app")


def create_app(registry: CollectorRegistry, is_ready: Callable[[], bool] = lambda: True) -> FastAPI:
    """Create the probe/metrics application.

    Args:
        registry: Registry rendered at ``/metrics``.
        is_ready: Readiness callback evaluated on every ``/readyz`` request.
    """
    from kubescanner import __version__

    app = FastAPI(
        title="kubernetes-scanner",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.registry = registry
    app.state.is_ready = is_ready

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz(request: Request) -> JSONResponse:
        if request.app.state.is_ready():
            return JSONResponse(status_code=200, content={"status": "ok"})
        return JSONResponse(status_code=503, content={"status": "not ready"})

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        payload, content_type = render_latest(request.app.state.registry)
        return Response(content=payload, media_type=content_type)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error("unhandled_exception", path=str(request.url.path), method=request.method, error=str(exc))
        return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR"})

    return app
