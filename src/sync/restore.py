"""Restore phase: recreate mirrored dashboards deleted from Grafana.

Only dashboards that still matter are restored: those an application
dashboard points at and templates. The stored API response is posted back
without its numeric id, into the folder it used to live in. When Grafana
rejects the restore with HTTP 412 the mirror record is dropped instead.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..adapters import GrafanaDatabase
from ..adapters.grafana import GrafanaClient
from ..autoconfig.finders import MetadataFinders
from ..autoconfig.updates import MetadataUpdates
from ..domain.errors import GrafanaApiError
from ..domain.models import GrafanaDashboard
from ..utils.partial_results import PartialResult, gather_partial

logger = logging.getLogger(__name__)


async def dashboards_to_restore(
    client: GrafanaClient, grafana_db: GrafanaDatabase, finders: MetadataFinders
) -> List[GrafanaDashboard]:
    """Mirror records missing upstream that are referenced or are templates."""
    live = set(await grafana_db.live_dashboard_uids())
    stored = await finders.find_grafana_dashboards_for_instance(client.label)
    missing = [d for d in stored if d.uid not in live]

    to_restore: List[GrafanaDashboard] = []
    for dashboard in missing:
        referenced = await finders.find_application_dashboards_by_dashboard_uid(
            dashboard.uid, client.label
        )
        if referenced or dashboard.is_template:
            to_restore.append(dashboard)
    if to_restore:
        logger.info(
            "sync.restore.found",
            extra={"grafana": client.label, "uids": [d.uid for d in to_restore]},
        )
    return to_restore


def restore_payload(dashboard: GrafanaDashboard) -> Dict[str, Any]:
    """Stored API response turned into a ``POST /api/dashboards/db`` body."""
    body = dashboard.body() or {}
    meta = body.pop("meta", None) or {}
    payload = dict(body)
    payload["dashboard"] = {
        k: v for k, v in (body.get("dashboard") or {}).items() if k != "id"
    }
    payload["folderId"] = meta.get("folderId", 0)
    return payload


async def restore_dashboard(
    client: GrafanaClient, updates: MetadataUpdates, dashboard: GrafanaDashboard
) -> str:
    """Restore one dashboard; returns ``"restored"`` or ``"removed"``."""
    try:
        await client.post_dashboard(restore_payload(dashboard))
    except GrafanaApiError as exc:
        if not exc.precondition_failed:
            raise
        await updates.delete_grafana_dashboard(client.label, dashboard.uid)
        logger.info(
            "sync.restore.removed",
            extra={"grafana": client.label, "uid": dashboard.uid, "dashboard": dashboard.name},
        )
        return "removed"
    logger.info(
        "sync.restore.restored",
        extra={"grafana": client.label, "uid": dashboard.uid, "dashboard": dashboard.name},
    )
    return "restored"


async def restore_dashboards(
    client: GrafanaClient,
    grafana_db: GrafanaDatabase,
    finders: MetadataFinders,
    updates: MetadataUpdates,
) -> PartialResult:
    to_restore = await dashboards_to_restore(client, grafana_db, finders)
    return await gather_partial(
        {d.uid: restore_dashboard(client, updates, d) for d in to_restore},
        "dashboard_restore",
    )
