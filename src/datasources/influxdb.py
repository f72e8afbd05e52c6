"""InfluxDB (InfluxQL) variable backend.

Queries run through Grafana's datasource proxy. ``SHOW MEASUREMENTS`` returns
single-column rows; ``SHOW TAG VALUES`` returns ``[key, value]`` rows, so the
second column is taken whenever a row has more than one.
"""

from __future__ import annotations

import logging
from typing import Any, List

import httpx

from ..adapters.grafana import GrafanaClient
from ..domain.errors import BackendQueryError, GrafanaApiError
from ..domain.models import Datasource, TemplatingVariable
from . import BackendOptions, add_unique, variable_regex

logger = logging.getLogger(__name__)


class InfluxDbBackend:
    """Resolve variable values from an InfluxDB datasource."""

    def __init__(
        self, client: GrafanaClient, datasource: Datasource, options: BackendOptions
    ) -> None:
        self._client = client
        self._datasource = datasource
        self._options = options

    async def resolve_variable_values(
        self, query: str, variable: TemplatingVariable
    ) -> List[str]:
        path = f"/api/datasources/proxy/uid/{self._datasource.uid}/query"
        params = [("db", self._datasource.database_name or ""), ("q", query)]
        try:
            payload = await self._client.get(path, params=params)
        except (GrafanaApiError, httpx.HTTPError) as exc:
            raise BackendQueryError(
                f"InfluxDB query for variable '{variable.name}' failed: {exc}",
                variable=variable.name,
            ) from exc

        pattern = variable_regex(variable)
        values: List[str] = []
        for row in _rows(payload):
            if not row:
                continue
            value = row[0] if len(row) == 1 else row[1]
            if value is None:
                continue
            text = str(value)
            if pattern is None or pattern.search(text):
                add_unique(values, text)
        logger.debug(
            "datasources.influxdb.values",
            extra={"variable": variable.name, "count": len(values)},
        )
        return values


def _rows(payload: Any) -> List[List[Any]]:
    rows: List[List[Any]] = []
    if not isinstance(payload, dict):
        return rows
    for result in payload.get("results") or []:
        for series in result.get("series") or []:
            rows.extend(series.get("values") or [])
    return rows
