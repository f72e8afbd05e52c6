"""Response models for the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Simple health/readiness response model."""

    status: str


class ErrorResponse(BaseModel):
    """Structured JSON error response for HTTP endpoints.

    Fields
    ------
    detail: str
        Human-readable explanation of the error.
    error_type: str
        Machine-readable error classification.
    """

    detail: str
    error_type: str


class StatusResponse(BaseModel):
    """Service state and the outcome of the most recent tick."""

    running: bool
    ticks: int
    sync_interval_ms: int
    grafana_database: bool = Field(
        description="Whether mirror sync can run (Grafana database configured)."
    )
    last_tick: Optional[Dict[str, Any]] = None


class SyncResponse(BaseModel):
    """Outcome of a tick triggered over HTTP."""

    tick_id: str
    status: str
    duration_ms: int
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
