"""HTTP surface for the sync service via FastAPI.

Exposes liveness and readiness checks, the status of the last tick and an
endpoint to trigger a tick on demand. ``POST /sync`` is protected by a bearer
token when ``SYNC_HTTP_TOKEN`` is set.
"""

from __future__ import annotations

import importlib
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from .. import __version__
from ..config.models import AppConfig, SyncSettings
from ..observability import setup_logging
from .app import (
    SyncService,
    close_context,
    log_process_memory,
    open_context,
    seed_grafana_instances,
)
from .models import ErrorResponse, HealthResponse, StatusResponse, SyncResponse

logger = logging.getLogger(__name__)


def _load_fastapi():
    """Dynamically import FastAPI pieces to keep deps optional."""
    fastapi_mod = importlib.import_module("fastapi")
    resp_mod = importlib.import_module("fastapi.responses")
    st_exc_mod = importlib.import_module("starlette.exceptions")
    return {
        "fastapi_cls": getattr(fastapi_mod, "FastAPI"),
        "depends": getattr(fastapi_mod, "Depends"),
        "header": getattr(fastapi_mod, "Header"),
        "http_exc": getattr(fastapi_mod, "HTTPException"),
        "status": getattr(fastapi_mod, "status"),
        "json_response": getattr(resp_mod, "JSONResponse"),
        "starlette_http_exc": getattr(st_exc_mod, "HTTPException"),
    }


def _get_expected_token() -> Optional[str]:
    """Return expected bearer token from environment, or ``None`` if disabled.

    Environment variable: ``SYNC_HTTP_TOKEN``.
    """
    token = os.environ.get("SYNC_HTTP_TOKEN")
    return token if token else None


def _make_auth_dependency(header: Any, http_exc: Any, status_mod: Any):
    """Return a dependency function that enforces optional bearer token."""

    def _auth_dependency(authorization: Optional[str] = header(default=None)) -> None:
        expected = _get_expected_token()
        if expected is None:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise http_exc(status_code=status_mod.HTTP_401_UNAUTHORIZED)
        token = authorization.split(" ", 1)[1]
        if token != expected:
            raise http_exc(status_code=status_mod.HTTP_403_FORBIDDEN)

    return _auth_dependency


def create_app(
    service: Optional[SyncService] = None,
    *,
    settings: Optional[SyncSettings] = None,
    config_path: Optional[Path] = None,
    start_loop: bool = True,
):
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service: Optional[SyncService]
        Pre-built service. When omitted the lifespan opens the store
        connections from ``settings`` and closes them at shutdown.
    settings: Optional[SyncSettings]
        Runtime settings; read from the environment when omitted.
    config_path: Optional[Path]
        JSON file whose Grafana instances are seeded at startup.
    start_loop: bool
        Run the periodic sync loop alongside the HTTP server.
    """
    settings = settings or (service.context.settings if service else SyncSettings())
    # Respect prior logging configuration from CLI; otherwise use env setting
    if not logging.getLogger().hasHandlers():
        setup_logging(settings.log_level)
    parts = _load_fastapi()
    state: dict = {"service": service}

    @asynccontextmanager
    async def lifespan(_app: Any):
        logger.info("http.startup")
        log_process_memory("http.startup.memory")
        owns_context = state["service"] is None
        if owns_context:
            try:
                context = await open_context(settings)
            except Exception as exc:
                logger.error(
                    "http.startup.connection_failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )
                raise
            if config_path is not None:
                await seed_grafana_instances(context, AppConfig.load(config_path))
            state["service"] = SyncService(context)
        current: SyncService = state["service"]
        if start_loop:
            await current.start()
        try:
            yield
        finally:
            logger.info("http.shutdown")
            await current.stop()
            if owns_context:
                await close_context(current.context)
                state["service"] = None

    fastapi_cls = parts["fastapi_cls"]
    app = fastapi_cls(title="Perfana Grafana Sync", version=__version__, lifespan=lifespan)
    jr = parts["json_response"]

    @app.exception_handler(parts["starlette_http_exc"])
    async def http_exception_handler(_request: Any, exc: Any):  # noqa: D401
        err = ErrorResponse(detail=str(getattr(exc, "detail", "")) or "HTTP error", error_type="http_error")
        return jr(status_code=exc.status_code, content={"detail": err.model_dump()})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Any, exc: Exception):  # noqa: D401
        # Avoid leaking internals; log server-side, return generic error
        logger.error("http.unhandled_exception", exc_info=exc)
        err = ErrorResponse(
            detail="Internal error. See server logs.", error_type="internal_server_error"
        )
        return jr(status_code=500, content={"detail": err.model_dump()})

    # Mark handlers as intentionally used (registered via decorators)
    _ = (http_exception_handler, unhandled_exception_handler)

    auth_dep = _make_auth_dependency(parts["header"], parts["http_exc"], parts["status"])
    depends = parts["depends"]

    @app.get("/health", response_model=HealthResponse, summary="Liveness check")
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=HealthResponse, summary="Readiness check")
    async def ready() -> HealthResponse:
        if state["service"] is None:
            raise parts["http_exc"](status_code=503, detail="service not initialized")
        return HealthResponse(status="ready")

    @app.get("/status", response_model=StatusResponse, summary="Last tick status")
    async def status() -> StatusResponse:
        current: Optional[SyncService] = state["service"]
        if current is None:
            raise parts["http_exc"](status_code=503, detail="service not initialized")
        return StatusResponse(
            running=current.running,
            ticks=current.ticks,
            sync_interval_ms=current.context.settings.sync_interval,
            grafana_database=current.context.grafana_db is not None,
            last_tick=current.last_tick,
        )

    @app.post(
        "/sync",
        response_model=SyncResponse,
        summary="Run a sync tick now",
        dependencies=[depends(auth_dep)],
    )
    async def trigger_sync() -> SyncResponse:
        current: Optional[SyncService] = state["service"]
        if current is None:
            raise parts["http_exc"](status_code=503, detail="service not initialized")
        logger.info("http.sync.triggered")
        return SyncResponse.model_validate(await current.run_once())

    return app
