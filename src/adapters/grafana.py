"""Grafana HTTP API client.

One client per Grafana instance. It carries the instance's service account
token as a bearer credential, retries transport failures with exponential
backoff, and turns every non-2xx response into :class:`GrafanaApiError`
carrying the status code.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from ..domain.errors import ConfigurationError, GrafanaApiError
from ..domain.models import Datasource, GrafanaInstance

logger = logging.getLogger(__name__)

QueryParams = Sequence[Tuple[str, Any]]


class GrafanaClient:
    """Async client for one Grafana instance.

    Parameters
    ----------
    instance: GrafanaInstance
        Connection descriptor from the ``grafanas`` collection.
    timeout: int
        Request timeout in seconds for all HTTP operations.
    max_retries: int
        Extra attempts after a connect error or read timeout.

    Attributes
    ----------
    label: str
        Instance label used on mirror records and bindings.
    """

    def __init__(
        self,
        instance: GrafanaInstance,
        timeout: int = 30,
        *,
        max_retries: int = 1,
        backoff_initial_ms: int = 200,
        backoff_multiplier: float = 2.0,
    ) -> None:
        base_url = instance.base_url
        if not base_url:
            raise ConfigurationError(
                f"Grafana instance '{instance.label}' has neither serverUrl nor clientUrl"
            )
        self.label = instance.label
        self.base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=self._headers(instance.api_key)
        )
        self._max_retries = max(0, int(max_retries))
        self._backoff_initial_ms = max(0, int(backoff_initial_ms))
        self._backoff_multiplier = max(1.0, float(backoff_multiplier))
        self._timeout_seconds = timeout
        logger.info(
            "grafana.client.init",
            extra={"grafana": self.label, "base_url": base_url, "timeout_seconds": timeout},
        )

    def inject_http_client_for_testing(self, client: Any) -> None:
        """Replace underlying HTTP client (testing only)."""
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _headers(api_key: Optional[str]) -> dict:
        """Build default headers for JSON requests."""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[QueryParams] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send a request and return the parsed JSON body.

        Raises
        ------
        GrafanaApiError
            On non-2xx responses.
        httpx.HTTPError
            On transport errors once retries are exhausted.
        """
        logger.debug(
            "grafana.http.request",
            extra={
                "grafana": self.label,
                "method": method,
                "path": path,
            },
        )
        attempt = 0
        last_exc: Optional[Exception] = None
        while attempt <= self._max_retries:
            try:
                resp = await self._client.request(
                    method, path, params=params, json=payload
                )
                resp.raise_for_status()
                break
            except (httpx.ReadTimeout, httpx.ConnectError) as exc:
                last_exc = exc
                logger.warning(
                    "grafana.http.retry",
                    extra={
                        "grafana": self.label,
                        "path": path,
                        "attempt": attempt + 1,
                        "max_retries": self._max_retries,
                        "error": type(exc).__name__,
                        "timeout_seconds": self._timeout_seconds,
                    },
                )
                delay = (self._backoff_initial_ms / 1000.0) * (
                    self._backoff_multiplier**attempt
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue
            except httpx.HTTPStatusError as exc:
                body_preview = ""
                text = exc.response.text
                if text:
                    body_preview = text if len(text) <= 500 else text[:500] + "..."
                logger.debug(
                    "grafana.http.status_error",
                    extra={
                        "grafana": self.label,
                        "path": path,
                        "status": exc.response.status_code,
                        "body_preview": body_preview,
                    },
                )
                raise GrafanaApiError(
                    exc.response.status_code, path, body_preview
                ) from exc
        else:
            if last_exc is not None:
                raise last_exc
            raise RuntimeError("Grafana request failed after retries without exception")
        if not resp.content:
            return None
        return resp.json()

    async def get(self, path: str, params: Optional[QueryParams] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, payload: Dict[str, Any]) -> Any:
        return await self._request("POST", path, payload=payload)

    # ---------------- Dashboards ----------------
    async def get_dashboard(self, uid: str) -> Dict[str, Any]:
        """Full dashboard response (``{"dashboard": ..., "meta": ...}``)."""
        return await self.get(f"/api/dashboards/uid/{uid}")

    async def search_dashboards(self, uids: Sequence[str]) -> List[Dict[str, Any]]:
        """Search metadata for the given dashboard uids."""
        if not uids:
            return []
        params = [("dashboardUIDs", uid) for uid in uids]
        result = await self.get("/api/search", params=params)
        return list(result or [])

    async def post_dashboard(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create or overwrite a dashboard via ``POST /api/dashboards/db``."""
        return await self.post("/api/dashboards/db", payload)

    # ---------------- Folders ----------------
    async def get_folder(self, uid: str) -> Dict[str, Any]:
        """Folder by uid; raises GrafanaApiError(404) when it does not exist."""
        return await self.get(f"/api/folders/{uid}")

    async def create_folder(self, title: str, uid: str) -> Dict[str, Any]:
        return await self.post("/api/folders", {"title": title, "uid": uid})

    # ---------------- Datasources ----------------
    async def get_datasource(
        self, *, uid: Optional[str] = None, name: Optional[str] = None
    ) -> Datasource:
        """Look a datasource up by uid (preferred) or by name."""
        if uid:
            data = await self.get(f"/api/datasources/uid/{uid}")
        elif name:
            data = await self.get(f"/api/datasources/name/{name}")
        else:
            raise ConfigurationError("Datasource lookup needs a uid or a name")
        return Datasource.model_validate(data or {})

    async def health(self) -> Dict[str, Any]:
        """Grafana's ``/api/health`` payload (used by connection checks)."""
        return await self.get("/api/health")
