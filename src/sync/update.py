"""Update phase: refresh mirrors of dashboards edited in Grafana.

Candidates are Perfana dashboards Grafana's database reports as updated in
the last hour. Their detail is fetched in batches of
``PARALLEL_GET_DASHBOARD_CALLS``; a dashboard is re-mirrored when Grafana's
``meta.updated`` is newer than the mirror's. Title changes then cascade to the
application dashboards and benchmark panels that point at it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..adapters import GrafanaDatabase
from ..adapters.grafana import GrafanaClient
from ..autoconfig.finders import MetadataFinders
from ..autoconfig.updates import MetadataUpdates
from ..domain.models import PERFANA_TAG, GrafanaDashboard, has_tag
from ..utils.partial_results import PartialResult, gather_in_batches
from ..utils.timestamps import ensure_utc, parse_timestamp, utc_now
from .store import DashboardMirror

logger = logging.getLogger(__name__)

UPDATE_WINDOW = timedelta(hours=1)


async def update_child_collections(
    dashboard: GrafanaDashboard, finders: MetadataFinders, updates: MetadataUpdates
) -> None:
    """Propagate a dashboard's title to records that copy it."""
    renamed = await updates.rename_application_dashboards(
        dashboard.grafana, dashboard.uid, dashboard.name
    )
    if renamed:
        logger.info(
            "sync.update.application_dashboards_renamed",
            extra={"uid": dashboard.uid, "title": dashboard.name, "count": renamed},
        )

    panels = {p.id: p for p in dashboard.panels}
    for benchmark in await finders.find_benchmarks_by_dashboard_uid(dashboard.uid):
        panel = panels.get(benchmark.panel.get("id"))
        if panel is None:
            continue
        title = f"{panel.id}-{panel.title}"
        if benchmark.panel.get("title") == title:
            continue
        await updates.update_benchmark_panel(benchmark.doc_id, {**benchmark.panel, "title": title})
        logger.info(
            "sync.update.benchmark_panel_renamed",
            extra={
                "dashboard_label": benchmark.dashboard_label,
                "application": benchmark.application,
                "title": title,
            },
        )


async def update_dashboards(
    client: GrafanaClient,
    grafana_db: GrafanaDatabase,
    finders: MetadataFinders,
    updates: MetadataUpdates,
    mirror: DashboardMirror,
    *,
    batch_size: int,
) -> PartialResult:
    """Re-mirror dashboards whose upstream copy is newer than the mirror.

    Successes are the refreshed records; dashboards that were already current
    count as successes with a ``None`` result.
    """
    uids = await grafana_db.updated_uids(utc_now() - UPDATE_WINDOW)
    if not uids:
        logger.info("sync.update.none_updated", extra={"grafana": client.label})
        return PartialResult()

    results = await client.search_dashboards(uids)
    candidates: List[Dict[str, Any]] = [r for r in results if has_tag(r.get("tags"), PERFANA_TAG)]
    stored = {d.uid: d for d in await finders.find_grafana_dashboards_for_instance(client.label)}

    async def _update(entry: Dict[str, Any]) -> Optional[GrafanaDashboard]:
        current = stored.get(entry["uid"])
        if current is None:
            return None
        api_object = await client.get_dashboard(entry["uid"])
        upstream = parse_timestamp((api_object.get("meta") or {}).get("updated"))
        if upstream is None:
            return None
        if current.updated is not None and ensure_utc(current.updated) >= upstream:
            return None
        record = await mirror.store(
            client, api_object, update=True, used_by_sut=current.used_by_sut
        )
        await update_child_collections(record, finders, updates)
        return record

    return await gather_in_batches(
        candidates,
        _update,
        key=lambda e: e["uid"],
        batch_size=batch_size,
        operation_type="dashboard_update",
    )
