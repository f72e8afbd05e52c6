"""Read side of the metadata facade.

Every query returns validated models; raw documents never leave this module.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..adapters import DocumentStore
from ..domain.errors import ConfigurationError, NotFoundError
from ..domain.models import (
    ApplicationDashboard,
    AutoConfigDashboard,
    Benchmark,
    Collections,
    DeepLink,
    GenericCheck,
    GenericDeepLink,
    GenericReportPanel,
    GrafanaDashboard,
    GrafanaInstance,
    Profile,
    ReportPanel,
    TestRun,
)

logger = logging.getLogger(__name__)


class MetadataFinders:
    """Queries against the Perfana metadata store.

    Parameters
    ----------
    store: DocumentStore
        Store to query.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def _find(self, collection: str, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._store.find(collection, query)

    # ---------------- Test runs & configuration ----------------
    async def find_recent_test_runs(self, since: datetime) -> List[TestRun]:
        """Test runs that ended at or after ``since``."""
        docs = await self._find(Collections.TEST_RUNS, {"end": {"$gte": since}})
        return [TestRun.from_document(d) for d in docs]

    async def find_profiles(self) -> List[Profile]:
        return [Profile.from_document(d) for d in await self._find(Collections.PROFILES, {})]

    async def find_auto_config_dashboards(self) -> List[AutoConfigDashboard]:
        docs = await self._find(Collections.AUTO_CONFIG_DASHBOARDS, {})
        return [AutoConfigDashboard.from_document(d) for d in docs]

    async def find_auto_config_dashboards_by_uid_and_profile(
        self, dashboard_uid: str, profile: Optional[str]
    ) -> List[AutoConfigDashboard]:
        docs = await self._find(
            Collections.AUTO_CONFIG_DASHBOARDS,
            {"dashboardUid": dashboard_uid, "profile": profile},
        )
        return [AutoConfigDashboard.from_document(d) for d in docs]

    async def find_generic_checks(self) -> List[GenericCheck]:
        docs = await self._find(Collections.GENERIC_CHECKS, {})
        return [GenericCheck.from_document(d) for d in docs]

    async def find_generic_deep_links(self) -> List[GenericDeepLink]:
        docs = await self._find(Collections.GENERIC_DEEP_LINKS, {})
        return [GenericDeepLink.from_document(d) for d in docs]

    async def find_generic_report_panels(self) -> List[GenericReportPanel]:
        docs = await self._find(Collections.GENERIC_REPORT_PANELS, {})
        return [GenericReportPanel.from_document(d) for d in docs]

    # ---------------- Grafana instances ----------------
    async def find_grafana_instances(self) -> List[GrafanaInstance]:
        docs = await self._find(Collections.GRAFANAS, {})
        return [GrafanaInstance.from_document(d) for d in docs]

    async def find_grafana_instance(self, label: str) -> GrafanaInstance:
        """Instance record for ``label``.

        Raises
        ------
        NotFoundError
            When no instance carries the label.
        """
        doc = await self._store.find_one(Collections.GRAFANAS, {"label": label})
        if doc is None:
            raise NotFoundError(f"Grafana configuration not found for: {label}")
        return GrafanaInstance.from_document(doc)

    # ---------------- Mirror records ----------------
    async def find_grafana_dashboards(
        self, grafana: str, uids: Sequence[str]
    ) -> List[GrafanaDashboard]:
        docs = await self._find(
            Collections.GRAFANA_DASHBOARDS, {"grafana": grafana, "uid": {"$in": list(uids)}}
        )
        return [GrafanaDashboard.from_document(d) for d in docs]

    async def find_grafana_dashboard_or_none(
        self, grafana: str, uids: Sequence[str]
    ) -> Optional[GrafanaDashboard]:
        """The single mirror record with one of ``uids``, or None.

        Raises
        ------
        ConfigurationError
            When more than one record matches.
        """
        dashboards = await self.find_grafana_dashboards(grafana, uids)
        if not dashboards:
            return None
        if len(dashboards) > 1:
            raise ConfigurationError(
                f"Found more than one Grafana dashboard with uid '{list(uids)}' "
                f"for Grafana '{grafana}'"
            )
        return dashboards[0]

    async def find_grafana_dashboard(
        self, grafana: str, uids: Sequence[str]
    ) -> GrafanaDashboard:
        dashboard = await self.find_grafana_dashboard_or_none(grafana, uids)
        if dashboard is None:
            raise NotFoundError(
                f"Could not find Grafana dashboard with one of uids '{list(uids)}' "
                f"for Grafana '{grafana}'"
            )
        return dashboard

    async def find_grafana_dashboards_for_instance(
        self, grafana: str
    ) -> List[GrafanaDashboard]:
        docs = await self._find(Collections.GRAFANA_DASHBOARDS, {"grafana": grafana})
        return [GrafanaDashboard.from_document(d) for d in docs]

    async def find_template_instances(
        self, grafana: str, template_uids: Sequence[str]
    ) -> List[GrafanaDashboard]:
        """Mirror records generated from any of ``template_uids``."""
        docs = await self._find(
            Collections.GRAFANA_DASHBOARDS,
            {"grafana": grafana, "templateDashboardUid": {"$in": list(template_uids)}},
        )
        return [GrafanaDashboard.from_document(d) for d in docs]

    # ---------------- Application dashboards ----------------
    async def find_application_dashboards(
        self,
        test_run: TestRun,
        grafana: str,
        dashboard_uids: Sequence[str],
        dashboard_label: Optional[str] = None,
    ) -> List[ApplicationDashboard]:
        """Instances for the run's application and environment with one of the uids."""
        query: Dict[str, Any] = {
            "grafana": grafana,
            "dashboardUid": {"$in": list(dashboard_uids)},
            "application": test_run.application,
            "testEnvironment": test_run.test_environment,
        }
        if dashboard_label:
            query["dashboardLabel"] = dashboard_label
        docs = await self._find(Collections.APPLICATION_DASHBOARDS, query)
        return [ApplicationDashboard.from_document(d) for d in docs]

    async def find_application_dashboards_by_template(
        self, template_uid: str, application: str, test_environment: str
    ) -> List[ApplicationDashboard]:
        docs = await self._find(
            Collections.APPLICATION_DASHBOARDS,
            {
                "templateDashboardUid": template_uid,
                "application": application,
                "testEnvironment": test_environment,
            },
        )
        return [ApplicationDashboard.from_document(d) for d in docs]

    async def find_application_dashboards_by_dashboard_uid(
        self, dashboard_uid: str, grafana: Optional[str] = None
    ) -> List[ApplicationDashboard]:
        query: Dict[str, Any] = {"dashboardUid": dashboard_uid}
        if grafana:
            query["grafana"] = grafana
        docs = await self._find(Collections.APPLICATION_DASHBOARDS, query)
        return [ApplicationDashboard.from_document(d) for d in docs]

    # ---------------- Dependent records ----------------
    async def find_benchmark(
        self, application_dashboard: ApplicationDashboard, check_id: Any, test_type: str
    ) -> Optional[Benchmark]:
        doc = await self._store.find_one(
            Collections.BENCHMARKS,
            {
                "$and": [
                    {"genericCheckId": check_id},
                    {"application": application_dashboard.application},
                    {"testEnvironment": application_dashboard.test_environment},
                    {"testType": test_type},
                    {"dashboardLabel": application_dashboard.dashboard_label},
                ]
            },
        )
        return Benchmark.from_document(doc) if doc else None

    async def find_benchmarks_by_dashboard_uid(self, dashboard_uid: str) -> List[Benchmark]:
        docs = await self._find(Collections.BENCHMARKS, {"dashboardUid": dashboard_uid})
        return [Benchmark.from_document(d) for d in docs]

    async def find_deep_link(
        self, generic_deep_link: GenericDeepLink, test_run: TestRun
    ) -> Optional[DeepLink]:
        doc = await self._store.find_one(
            Collections.DEEP_LINKS,
            {
                "$and": [
                    {"genericDeepLinkId": generic_deep_link.doc_id},
                    {"application": test_run.application},
                    {"testEnvironment": test_run.test_environment},
                    {"testType": test_run.test_type},
                ]
            },
        )
        return DeepLink.from_document(doc) if doc else None

    async def find_report_panel(
        self,
        application_dashboard: ApplicationDashboard,
        report_panel_id: Any,
        test_type: str,
    ) -> Optional[ReportPanel]:
        doc = await self._store.find_one(
            Collections.REPORT_PANELS,
            {
                "$and": [
                    {"genericReportPanelId": report_panel_id},
                    {"application": application_dashboard.application},
                    {"testEnvironment": application_dashboard.test_environment},
                    {"dashboardUid": application_dashboard.dashboard_uid},
                    {"dashboardLabel": application_dashboard.dashboard_label},
                    {"testType": test_type},
                ]
            },
        )
        return ReportPanel.from_document(doc) if doc else None
