"""Benchmarks, deep links and report panels derived from generic records.

Generic records are attached to profiles. For every test run they are applied
to the run (deep links) or to each generated dashboard of their template
(benchmarks, report panels). Each derived record is inserted only when no
record with the same natural key exists yet, so repeated ticks are no-ops.
"""

from __future__ import annotations

import logging
import re
from typing import List

from ..domain.matching import compile_or_literal
from ..domain.models import (
    Benchmark,
    DeepLink,
    GenericCheck,
    GenericDeepLink,
    GenericReportPanel,
    ReportPanel,
    TestRun,
)
from .finders import MetadataFinders
from .updates import MetadataUpdates

logger = logging.getLogger(__name__)


def workload_matches(check: GenericCheck, test_type: str) -> bool:
    """True when ``addForWorkloadsMatchingRegex`` (default ``.*``) matches ``test_type``.

    Matching is case-insensitive; an invalid pattern matches literally.
    """
    pattern = compile_or_literal(
        check.add_for_workloads_matching_regex or ".*",
        re.IGNORECASE,
        context=f"genericCheck:{check.name or check.doc_id}",
    )
    return pattern.search(test_type or "") is not None


class DependentRecords:
    """Create records derived from generic checks, deep links and report panels."""

    def __init__(self, finders: MetadataFinders, updates: MetadataUpdates) -> None:
        self._finders = finders
        self._updates = updates

    async def process_generic_checks(
        self, test_run: TestRun, profile_names: List[str], checks: List[GenericCheck]
    ) -> int:
        """Create missing benchmarks; return how many were inserted."""
        created = 0
        for check in checks:
            if check.profile not in profile_names:
                continue
            if not workload_matches(check, test_run.test_type):
                continue
            try:
                created += await self._apply_check(test_run, check)
            except Exception as exc:
                logger.error(
                    "autoconfig.generic_check.failed",
                    extra={
                        "check_id": check.check_id,
                        "test_run_id": test_run.test_run_id,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
        return created

    async def _apply_check(self, test_run: TestRun, check: GenericCheck) -> int:
        created = 0
        dashboards = await self._finders.find_application_dashboards_by_template(
            check.dashboard_uid, test_run.application, test_run.test_environment
        )
        for dashboard in dashboards:
            existing = await self._finders.find_benchmark(
                dashboard, check.check_id, test_run.test_type
            )
            if existing is not None:
                logger.debug(
                    "autoconfig.benchmark.exists",
                    extra={"check_id": check.check_id, "test_run_id": test_run.test_run_id},
                )
                continue
            await self._updates.insert_benchmark(
                Benchmark(
                    application=test_run.application,
                    test_environment=test_run.test_environment,
                    test_type=test_run.test_type,
                    grafana=dashboard.grafana,
                    dashboard_label=dashboard.dashboard_label,
                    dashboard_id=dashboard.dashboard_id,
                    dashboard_uid=dashboard.dashboard_uid,
                    panel=check.panel,
                    generic_check_id=check.check_id,
                )
            )
            created += 1
            logger.info(
                "autoconfig.benchmark.created",
                extra={
                    "check": check.name or check.doc_id,
                    "dashboard_label": dashboard.dashboard_label,
                    "application": test_run.application,
                },
            )
        return created

    async def process_generic_deep_links(
        self, test_run: TestRun, profile_names: List[str], links: List[GenericDeepLink]
    ) -> int:
        """Create missing deep links; return how many were inserted."""
        created = 0
        for link in links:
            if link.profile not in profile_names:
                continue
            try:
                if await self._finders.find_deep_link(link, test_run) is not None:
                    logger.debug(
                        "autoconfig.deep_link.exists",
                        extra={"name": link.name, "test_run_id": test_run.test_run_id},
                    )
                    continue
                await self._updates.insert_deep_link(
                    DeepLink(
                        application=test_run.application,
                        test_environment=test_run.test_environment,
                        test_type=test_run.test_type,
                        name=link.name,
                        url=link.url,
                        generic_deep_link_id=link.doc_id,
                    )
                )
                created += 1
                logger.info(
                    "autoconfig.deep_link.created",
                    extra={"name": link.name or link.doc_id, "application": test_run.application},
                )
            except Exception as exc:
                logger.error(
                    "autoconfig.generic_deep_link.failed",
                    extra={
                        "deep_link": link.doc_id,
                        "test_run_id": test_run.test_run_id,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
        return created

    async def process_generic_report_panels(
        self,
        test_run: TestRun,
        profile_names: List[str],
        panels: List[GenericReportPanel],
    ) -> int:
        """Create missing report panels; return how many were inserted."""
        created = 0
        for generic in panels:
            if generic.profile not in profile_names:
                continue
            try:
                created += await self._apply_report_panel(test_run, generic)
            except Exception as exc:
                logger.error(
                    "autoconfig.generic_report_panel.failed",
                    extra={
                        "report_panel_id": generic.report_panel_id,
                        "test_run_id": test_run.test_run_id,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
        return created

    async def _apply_report_panel(
        self, test_run: TestRun, generic: GenericReportPanel
    ) -> int:
        created = 0
        dashboards = await self._finders.find_application_dashboards_by_template(
            generic.dashboard_uid, test_run.application, test_run.test_environment
        )
        for dashboard in dashboards:
            existing = await self._finders.find_report_panel(
                dashboard, generic.report_panel_id, test_run.test_type
            )
            if existing is not None:
                continue
            await self._updates.insert_report_panel(
                ReportPanel(
                    application=test_run.application,
                    test_environment=test_run.test_environment,
                    test_type=test_run.test_type,
                    grafana=dashboard.grafana,
                    dashboard_label=dashboard.dashboard_label,
                    dashboard_id=dashboard.dashboard_id,
                    dashboard_uid=dashboard.dashboard_uid,
                    panel=generic.panel,
                    index=1,
                    generic_report_panel_id=generic.report_panel_id,
                )
            )
            created += 1
            logger.info(
                "autoconfig.report_panel.created",
                extra={
                    "report_panel": generic.name or generic.doc_id,
                    "dashboard_label": dashboard.dashboard_label,
                },
            )
        return created
