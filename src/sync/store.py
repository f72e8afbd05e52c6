"""Mirror a Grafana dashboard into the ``grafanaDashboards`` collection.

The mirror record keeps the full API response (``grafanaJson``) next to the
summaries the rest of Perfana reads: panel list, templating variables and the
datasource type of the first graph-like panel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ..adapters.grafana import GrafanaClient
from ..autoconfig.finders import MetadataFinders
from ..autoconfig.updates import MetadataUpdates
from ..domain.errors import ConfigurationError, GrafanaApiError
from ..domain.models import (
    ApplicationDashboardVariable,
    GrafanaDashboard,
    Panel,
    TemplatingVariable,
)
from ..utils import serialization
from ..utils.timestamps import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

GRAPH_PANEL_TYPES = ("graph", "timeseries", "table", "flamegraph")


@dataclass
class Provenance:
    """Where a generated dashboard came from.

    Stored on the mirror record so later template edits can be propagated.
    """

    template_dashboard_uid: Optional[str] = None
    template_profile: Optional[str] = None
    template_test_run_variables: Optional[List[Any]] = None
    template_create_date: Optional[datetime] = None
    application_dashboard_variables: Optional[List[ApplicationDashboardVariable]] = None


def _iter_panels(panels: Iterable[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    # Collapsed rows keep their children in the row's own ``panels`` list
    for panel in panels or []:
        yield panel
        if panel.get("type") == "row" and panel.get("panels"):
            yield from _iter_panels(panel["panels"])


def _y_axes_format(panel: Dict[str, Any]) -> Optional[str]:
    unit = ((panel.get("fieldConfig") or {}).get("defaults") or {}).get("unit")
    if unit:
        return unit
    yaxes = panel.get("yaxes") or []
    if yaxes and isinstance(yaxes[0], dict):
        return yaxes[0].get("format")
    return None


def collect_panels(dashboard: Dict[str, Any]) -> List[Panel]:
    """Panels with a datasource, excluding repeated copies."""
    panels: List[Panel] = []
    for panel in _iter_panels(dashboard.get("panels") or []):
        if "repeatIteration" in panel or "datasource" not in panel:
            continue
        repeat = panel.get("repeat")
        panels.append(
            Panel(
                id=panel.get("id"),
                title=panel.get("title"),
                type=panel.get("type"),
                description=panel.get("description"),
                y_axes_format=_y_axes_format(panel),
                repeat=None if repeat in (None, "null") else repeat,
            )
        )
    return panels


def collect_templating_variables(dashboard: Dict[str, Any]) -> List[TemplatingVariable]:
    templating = dashboard.get("templating") or {}
    variables: List[TemplatingVariable] = []
    for item in templating.get("list") or []:
        if not item.get("name"):
            continue
        variables.append(
            TemplatingVariable(
                name=item["name"],
                type=item.get("type") or "",
                query=item.get("query"),
                datasource=item.get("datasource"),
                regex=item.get("regex") or None,
                options=item.get("options") if item.get("regex") else None,
            )
        )
    return variables


async def lookup_datasource_type(
    client: GrafanaClient, dashboard: Dict[str, Any]
) -> Optional[str]:
    """Type of the datasource behind the first graph-like panel, if resolvable."""
    first = next(
        (
            p
            for p in _iter_panels(dashboard.get("panels") or [])
            if p.get("type") in GRAPH_PANEL_TYPES
        ),
        None,
    )
    if first is None or not first.get("datasource"):
        return None
    reference = first["datasource"]
    uid = reference.get("uid") if isinstance(reference, dict) else None
    name = reference if isinstance(reference, str) else None
    try:
        datasource = await client.get_datasource(uid=uid, name=name)
    except (GrafanaApiError, ConfigurationError, httpx.HTTPError) as exc:
        logger.warning(
            "sync.store.datasource_lookup_failed",
            extra={
                "grafana": client.label,
                "dashboard": dashboard.get("title"),
                "panel": first.get("title"),
                "error": str(exc),
            },
        )
        return None
    return datasource.type or None


class DashboardMirror:
    """Build and upsert mirror records from Grafana API responses."""

    def __init__(self, finders: MetadataFinders, updates: MetadataUpdates) -> None:
        self._finders = finders
        self._updates = updates

    async def store(
        self,
        client: GrafanaClient,
        api_object: Dict[str, Any],
        *,
        update: bool,
        used_by_sut: Optional[List[str]] = None,
        provenance: Optional[Provenance] = None,
    ) -> GrafanaDashboard:
        """Mirror ``api_object`` (``{"dashboard": ..., "meta": ...}``).

        Parameters
        ----------
        client: GrafanaClient
            Client of the instance the dashboard lives in.
        api_object: Dict[str, Any]
            Response of ``GET /api/dashboards/uid/<uid>``.
        update: bool
            When False an already mirrored dashboard is returned untouched.
        used_by_sut: Optional[List[str]]
            Applications using the dashboard.
        provenance: Optional[Provenance]
            Template provenance for generated dashboards. Fields left as None
            keep their stored values.

        Returns
        -------
        GrafanaDashboard
            The record as written (or as found when not updating).
        """
        dashboard = api_object.get("dashboard") or {}
        meta = api_object.get("meta") or {}
        uid = dashboard.get("uid")

        if not update:
            stored = await self._finders.find_grafana_dashboard_or_none(client.label, [uid])
            if stored is not None:
                return stored

        templating_variables = collect_templating_variables(dashboard)
        record = GrafanaDashboard(
            grafana=client.label,
            uid=uid,
            name=dashboard.get("title") or "",
            dashboard_id=dashboard.get("id"),
            tags=list(dashboard.get("tags") or []),
            slug=meta.get("slug"),
            uri=meta.get("url"),
            datasource_type=await lookup_datasource_type(client, dashboard),
            panels=collect_panels(dashboard),
            variables=[{"name": v.name} for v in templating_variables],
            templating_variables=templating_variables,
            used_by_sut=list(used_by_sut or []),
            updated=parse_timestamp(meta.get("updated")) or utc_now(),
            grafana_json=serialization.dumps(api_object),
        )
        if provenance is not None:
            record.template_dashboard_uid = provenance.template_dashboard_uid
            record.template_profile = provenance.template_profile
            record.template_test_run_variables = provenance.template_test_run_variables
            record.template_create_date = provenance.template_create_date
            record.application_dashboard_variables = (
                provenance.application_dashboard_variables
            )

        await self._updates.upsert_grafana_dashboard(record)
        logger.info(
            "sync.store.updated" if update else "sync.store.added",
            extra={"grafana": client.label, "uid": uid, "dashboard": record.name},
        )
        return record
