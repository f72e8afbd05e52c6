"""Graphite variable backend (``/metrics/find`` through the datasource proxy)."""

from __future__ import annotations

import logging
from typing import List

import httpx

from ..adapters.grafana import GrafanaClient
from ..domain.errors import BackendQueryError, GrafanaApiError
from ..domain.models import Datasource, TemplatingVariable
from . import BackendOptions, add_unique, variable_regex

logger = logging.getLogger(__name__)


class GraphiteBackend:
    """Resolve variable values from a Graphite datasource."""

    def __init__(
        self, client: GrafanaClient, datasource: Datasource, options: BackendOptions
    ) -> None:
        self._client = client
        self._datasource = datasource

    async def resolve_variable_values(
        self, query: str, variable: TemplatingVariable
    ) -> List[str]:
        path = f"/api/datasources/proxy/uid/{self._datasource.uid}/metrics/find"
        try:
            payload = await self._client.get(path, params=[("query", query)])
        except (GrafanaApiError, httpx.HTTPError) as exc:
            raise BackendQueryError(
                f"Graphite query for variable '{variable.name}' failed: {exc}",
                variable=variable.name,
            ) from exc

        pattern = variable_regex(variable)
        values: List[str] = []
        for node in payload or []:
            text = node.get("text") if isinstance(node, dict) else None
            if text is None:
                continue
            if pattern is None or pattern.search(str(text)):
                add_unique(values, text)
        return values
