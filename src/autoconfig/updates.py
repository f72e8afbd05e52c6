"""Write side of the metadata facade.

Inserts are preceded by an existence check in the callers, not guarded by a
unique index. Two ticks racing on the same record can both insert; consumers
of these collections tolerate the duplicate.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..adapters import DocumentStore
from ..config.models import GrafanaInstanceConfig
from ..domain.models import (
    ApplicationDashboard,
    ApplicationDashboardVariable,
    Benchmark,
    Collections,
    DeepLink,
    GrafanaDashboard,
    ReportPanel,
    new_document_id,
)

logger = logging.getLogger(__name__)


class MetadataUpdates:
    """Mutations against the Perfana metadata store.

    Parameters
    ----------
    store: DocumentStore
        Store to write to.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    # ---------------- Application dashboards ----------------
    async def insert_application_dashboard(
        self, application_dashboard: ApplicationDashboard
    ) -> Any:
        if application_dashboard.doc_id is None:
            application_dashboard.doc_id = new_document_id()
        return await self._store.insert_one(
            Collections.APPLICATION_DASHBOARDS, application_dashboard.to_document()
        )

    async def update_application_dashboard_variables(
        self, doc_id: Any, variables: List[ApplicationDashboardVariable]
    ) -> int:
        """Replace only the ``variables`` field of one instance."""
        return await self._store.update_one(
            Collections.APPLICATION_DASHBOARDS,
            {"_id": doc_id},
            {"$set": {"variables": [v.model_dump() for v in variables]}},
        )

    async def delete_application_dashboards(self, doc_ids: List[Any]) -> int:
        if not doc_ids:
            return 0
        return await self._store.delete_many(
            Collections.APPLICATION_DASHBOARDS, {"_id": {"$in": doc_ids}}
        )

    async def rename_application_dashboards(
        self, grafana: str, dashboard_uid: str, title: str
    ) -> int:
        return await self._store.update_many(
            Collections.APPLICATION_DASHBOARDS,
            {"grafana": grafana, "dashboardUid": dashboard_uid},
            {"$set": {"dashboardName": title}},
        )

    # ---------------- Mirror records ----------------
    async def upsert_grafana_dashboard(
        self, dashboard: GrafanaDashboard
    ) -> Optional[Dict[str, Any]]:
        """Upsert a mirror record keyed by ``(grafana, uid)``.

        Existing records keep their ``_id``; new ones get a fresh one.
        """
        fields = dashboard.to_document()
        doc_id = fields.pop("_id", None) or new_document_id()
        return await self._store.find_one_and_update(
            Collections.GRAFANA_DASHBOARDS,
            {"grafana": dashboard.grafana, "uid": dashboard.uid},
            {"$set": fields, "$setOnInsert": {"_id": doc_id}},
            upsert=True,
        )

    async def add_used_by_sut(self, dashboard: GrafanaDashboard, application: str) -> int:
        """Record that ``application`` uses ``dashboard`` (read-only templates)."""
        return await self._store.update_one(
            Collections.GRAFANA_DASHBOARDS,
            {"grafana": dashboard.grafana, "uid": dashboard.uid},
            {"$addToSet": {"usedBySUT": application}},
        )

    async def delete_grafana_dashboard(self, grafana: str, uid: str) -> int:
        return await self._store.delete_one(
            Collections.GRAFANA_DASHBOARDS, {"grafana": grafana, "uid": uid}
        )

    async def upsert_grafana_instance(self, config: GrafanaInstanceConfig) -> None:
        """Register (or refresh) a Grafana instance keyed by label."""
        fields = config.model_dump(by_alias=True, exclude_none=True)
        await self._store.find_one_and_update(
            Collections.GRAFANAS,
            {"label": config.label},
            {"$set": fields, "$setOnInsert": {"_id": new_document_id()}},
            upsert=True,
        )

    # ---------------- Dependent records ----------------
    async def insert_benchmark(self, benchmark: Benchmark) -> Any:
        if benchmark.doc_id is None:
            benchmark.doc_id = new_document_id()
        return await self._store.insert_one(Collections.BENCHMARKS, benchmark.to_document())

    async def update_benchmark_panel(self, doc_id: Any, panel: Dict[str, Any]) -> int:
        return await self._store.update_one(
            Collections.BENCHMARKS, {"_id": doc_id}, {"$set": {"panel": panel}}
        )

    async def insert_deep_link(self, deep_link: DeepLink) -> Any:
        if deep_link.doc_id is None:
            deep_link.doc_id = new_document_id()
        return await self._store.insert_one(Collections.DEEP_LINKS, deep_link.to_document())

    async def insert_report_panel(self, report_panel: ReportPanel) -> Any:
        if report_panel.doc_id is None:
            report_panel.doc_id = new_document_id()
        return await self._store.insert_one(
            Collections.REPORT_PANELS, report_panel.to_document()
        )
