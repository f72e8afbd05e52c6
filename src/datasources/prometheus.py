"""Prometheus variable backend.

Two query shapes are supported:

- ``label_values(<selector>, <label>)``: a series query over the last
  ``PROMETHEUS_VARIABLES_QUERY_TIME_RANGE_DAYS`` days, taking ``<label>`` from
  every returned series;
- anything else: a label-values query. The label is the one named in
  ``label_values(<label>)``, otherwise the variable name.

With a variable regex, series values that do not match are dropped. When the
regex has capture groups the value kept is the concatenation of the groups.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Any, List, Optional, Pattern

import httpx

from ..adapters.grafana import GrafanaClient
from ..domain.errors import BackendQueryError, GrafanaApiError
from ..domain.models import Datasource, TemplatingVariable
from ..utils.timestamps import utc_now
from . import BackendOptions, add_unique, variable_regex

logger = logging.getLogger(__name__)

SERIES_QUERY = re.compile(r"label_values\((.*),\s*([^\)]+)\)")
LABEL_QUERY = re.compile(r"label_values\(\s*([A-Za-z_][A-Za-z0-9_]*)\s*\)")


class PrometheusBackend:
    """Resolve variable values from a Prometheus datasource."""

    def __init__(
        self, client: GrafanaClient, datasource: Datasource, options: BackendOptions
    ) -> None:
        self._client = client
        self._datasource = datasource
        self._range_days = options.prometheus_range_days

    @property
    def _proxy(self) -> str:
        return f"/api/datasources/proxy/uid/{self._datasource.uid}"

    async def resolve_variable_values(
        self, query: str, variable: TemplatingVariable
    ) -> List[str]:
        pattern = variable_regex(variable)
        series = SERIES_QUERY.search(query)
        if series:
            selector, label = series.group(1).strip(), series.group(2).strip()
            payload = await self._fetch(
                f"{self._proxy}/api/v1/series",
                [
                    ("match[]", selector),
                    ("start", str(int((utc_now() - timedelta(days=self._range_days)).timestamp()))),
                    ("end", str(int(utc_now().timestamp()))),
                ],
                variable,
            )
            return _series_values(payload, label, pattern)

        label_match = LABEL_QUERY.search(query)
        label = label_match.group(1) if label_match else variable.name
        payload = await self._fetch(
            f"{self._proxy}/api/v1/label/{label}/values", None, variable
        )
        values: List[str] = []
        for value in _data(payload):
            text = str(value)
            if pattern is None or pattern.search(text):
                add_unique(values, text)
        return values

    async def _fetch(self, path: str, params: Any, variable: TemplatingVariable) -> Any:
        try:
            return await self._client.get(path, params=params)
        except (GrafanaApiError, httpx.HTTPError) as exc:
            raise BackendQueryError(
                f"Prometheus query for variable '{variable.name}' failed: {exc}",
                variable=variable.name,
            ) from exc


def _data(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        return list(payload.get("data") or [])
    return []


def _series_values(payload: Any, label: str, pattern: Optional[Pattern[str]]) -> List[str]:
    values: List[str] = []
    for series in _data(payload):
        if not isinstance(series, dict) or label not in series:
            continue
        text = str(series[label])
        if pattern is None:
            add_unique(values, text)
            continue
        match = pattern.search(text)
        if not match:
            continue
        groups = "".join(g for g in match.groups() if g)
        add_unique(values, groups or text)
    return values
