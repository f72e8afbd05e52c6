"""Template propagation: push template edits onto generated dashboards.

Enabled with ``PROPAGATE_TEMPLATE_UPDATES``. A generated dashboard receives
its template's current body when the template changed after the instance
was last mirrored and the instance itself was not edited since it was
created (or last propagated). Identity fields of the instance (uid, id,
title, tags and folder) are kept.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..adapters import GrafanaDatabase
from ..adapters.grafana import GrafanaClient
from ..autoconfig.finders import MetadataFinders
from ..domain.models import GrafanaDashboard
from ..utils.partial_results import PartialResult, failure_from_exception
from ..utils.timestamps import ensure_utc, parse_timestamp, utc_now
from .store import DashboardMirror, Provenance

logger = logging.getLogger(__name__)


def needs_propagation(instance: GrafanaDashboard, template_updated: Any) -> bool:
    """True when the template is newer and the instance was not edited by hand."""
    upstream = parse_timestamp(template_updated)
    if upstream is None or instance.updated is None:
        return False
    updated = ensure_utc(instance.updated)
    if not updated < upstream:
        return False
    if instance.template_create_date is None:
        return False
    return updated <= ensure_utc(instance.template_create_date)


def propagation_payload(
    template_body: Dict[str, Any], instance: GrafanaDashboard
) -> Dict[str, Any]:
    """Template dashboard carrying the instance's identity, ready to POST."""
    template_dashboard = template_body.get("dashboard") or {}
    instance_body = instance.body() or {}
    instance_meta = instance_body.get("meta") or {}
    dashboard = dict(template_dashboard)
    dashboard.update(
        uid=instance.uid,
        id=instance.dashboard_id,
        title=instance.name,
        tags=list(instance.tags),
        version=int(template_dashboard.get("version") or 0) + 1,
    )
    return {
        "dashboard": dashboard,
        "folderId": instance_meta.get("folderId", 0),
        "overwrite": True,
    }


async def propagate_template_updates(
    client: GrafanaClient,
    grafana_db: GrafanaDatabase,
    finders: MetadataFinders,
    mirror: DashboardMirror,
) -> PartialResult:
    """Update generated dashboards from their templates, one at a time."""
    results = PartialResult()
    template_uids = await grafana_db.template_dashboard_uids()
    if not template_uids:
        return results
    instances = await finders.find_template_instances(client.label, template_uids)
    if not instances:
        return results

    for template_uid in template_uids:
        related: List[GrafanaDashboard] = [
            i for i in instances if i.template_dashboard_uid == template_uid
        ]
        if not related:
            continue
        try:
            template_body = await client.get_dashboard(template_uid)
        except Exception as exc:
            results.failures.append(failure_from_exception(template_uid, exc))
            logger.error(
                "sync.templates.fetch_failed",
                extra={
                    "grafana": client.label,
                    "template_uid": template_uid,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            continue
        template_updated = (template_body.get("meta") or {}).get("updated")

        for instance in related:
            try:
                bindings = await finders.find_auto_config_dashboards_by_uid_and_profile(
                    template_uid, instance.template_profile
                )
                if not bindings or not needs_propagation(instance, template_updated):
                    continue
                await client.post_dashboard(propagation_payload(template_body, instance))
                refreshed = await client.get_dashboard(instance.uid)
                meta = refreshed.get("meta") or {}
                record = await mirror.store(
                    client,
                    refreshed,
                    update=True,
                    used_by_sut=instance.used_by_sut,
                    provenance=Provenance(
                        template_dashboard_uid=instance.template_dashboard_uid,
                        template_profile=instance.template_profile,
                        template_create_date=parse_timestamp(meta.get("updated")) or utc_now(),
                    ),
                )
                results.successes.append(record)
                logger.info(
                    "sync.templates.propagated",
                    extra={"grafana": client.label, "template_uid": template_uid, "uid": instance.uid},
                )
            except Exception as exc:
                results.failures.append(failure_from_exception(instance.uid, exc))
                logger.error(
                    "sync.templates.propagate_failed",
                    extra={
                        "grafana": client.label,
                        "uid": instance.uid,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
    return results
