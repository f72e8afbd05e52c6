"""Exception hierarchy for the sync and auto-configuration engine.

Per-item failures are raised with one of these types and caught at the loop
that owns the item (a dashboard, a templating variable, a binding, a test
run); they are logged there and the loop moves on.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(SyncError):
    """Malformed configuration or an ambiguous lookup that must be unique."""


class NotFoundError(SyncError):
    """A record the current operation depends on does not exist."""


class TemplateDashboardError(SyncError):
    """A binding points at a dashboard that cannot serve as a template."""


class BackendQueryError(SyncError):
    """A time-series backend call failed while resolving a variable.

    Treated as retryable on the next tick; never fatal to a batch.
    """

    def __init__(self, message: str, *, variable: Optional[str] = None) -> None:
        super().__init__(message)
        self.variable = variable


class GrafanaApiError(SyncError):
    """Non-2xx response from the Grafana HTTP API.

    Attributes
    ----------
    status_code: int
        HTTP status returned by Grafana.
    path: str
        Request path that failed.
    """

    def __init__(self, status_code: int, path: str, body_preview: str = "") -> None:
        self.status_code = status_code
        self.path = path
        self.body_preview = body_preview
        super().__init__(f"statusCode: {status_code} path: {path} {body_preview}".strip())

    @property
    def precondition_failed(self) -> bool:
        """True when Grafana rejected the request with HTTP 412."""
        return self.status_code == 412
