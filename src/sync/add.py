"""Add phase: mirror new Perfana dashboards.

A dashboard is added when Grafana's database reports it as created within the
last 24 hours (or tagged as a template), its search entry carries the
``perfana`` tag and no mirror record exists for it yet.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List

from ..adapters import GrafanaDatabase
from ..adapters.grafana import GrafanaClient
from ..autoconfig.finders import MetadataFinders
from ..domain.models import PERFANA_TAG, has_tag
from ..utils.partial_results import PartialResult, gather_partial
from ..utils.timestamps import utc_now
from .store import DashboardMirror

logger = logging.getLogger(__name__)

ADD_WINDOW = timedelta(hours=24)


async def dashboards_to_add(
    client: GrafanaClient, grafana_db: GrafanaDatabase, finders: MetadataFinders
) -> List[Dict[str, Any]]:
    """Search entries of Perfana dashboards that are not mirrored yet."""
    uids = await grafana_db.created_or_template_uids(utc_now() - ADD_WINDOW)
    if not uids:
        logger.info("sync.add.none_created", extra={"grafana": client.label})
        return []

    results = await client.search_dashboards(uids)
    stored = {d.uid for d in await finders.find_grafana_dashboards_for_instance(client.label)}
    to_add = [
        r for r in results if has_tag(r.get("tags"), PERFANA_TAG) and r.get("uid") not in stored
    ]
    if to_add:
        logger.info(
            "sync.add.found",
            extra={"grafana": client.label, "titles": [r.get("title") for r in to_add]},
        )
    return to_add


async def add_dashboards(
    client: GrafanaClient,
    grafana_db: GrafanaDatabase,
    finders: MetadataFinders,
    mirror: DashboardMirror,
) -> PartialResult:
    """Fetch and mirror every dashboard returned by :func:`dashboards_to_add`."""
    to_add = await dashboards_to_add(client, grafana_db, finders)

    async def _add(uid: str) -> Any:
        api_object = await client.get_dashboard(uid)
        return await mirror.store(client, api_object, update=False)

    return await gather_partial({r["uid"]: _add(r["uid"]) for r in to_add}, "dashboard_add")
