"""One sync tick: mirror sync for every Grafana instance, then auto-config.

Instances are processed concurrently; within an instance the phases run in
order (add, update, restore, template propagation). A failing phase is
logged and the instance moves on to the next one; a failing instance never
affects the others.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from ..adapters.context import SyncContext
from ..autoconfig.service import AutoConfigService
from ..domain.models import GrafanaInstance
from ..utils.partial_results import PartialResult, format_failure_summary
from .add import add_dashboards
from .restore import restore_dashboards
from .templates import propagate_template_updates
from .update import update_dashboards

logger = logging.getLogger(__name__)


def _phase_summary(result: PartialResult) -> Dict[str, Any]:
    return {
        "succeeded": len(result.successes),
        "failed": len(result.failures),
        "failures": [f.identifier for f in result.failures],
    }


class SyncRunner:
    """Run sync ticks against the shared :class:`SyncContext`."""

    def __init__(self, context: SyncContext) -> None:
        self._context = context
        self.autoconfig = AutoConfigService(context)
        self.finders = self.autoconfig.finders
        self.updates = self.autoconfig.updates
        self.mirror = self.autoconfig.mirror

    async def sync_instance(self, instance: GrafanaInstance) -> Dict[str, Any]:
        """Run the mirror phases for one instance; returns per-phase counters."""
        summary: Dict[str, Any] = {}
        grafana_db = self._context.grafana_db
        if grafana_db is None:
            logger.info("sync.instance.mirror_disabled", extra={"grafana": instance.label})
            return summary
        client = self._context.grafana_client(instance)
        settings = self._context.settings

        phases = [
            ("add", lambda: add_dashboards(client, grafana_db, self.finders, self.mirror)),
            (
                "update",
                lambda: update_dashboards(
                    client,
                    grafana_db,
                    self.finders,
                    self.updates,
                    self.mirror,
                    batch_size=settings.parallel_get_dashboard_calls,
                ),
            ),
            ("restore", lambda: restore_dashboards(client, grafana_db, self.finders, self.updates)),
        ]
        if settings.propagate_template_updates:
            phases.append(
                (
                    "templates",
                    lambda: propagate_template_updates(
                        client, grafana_db, self.finders, self.mirror
                    ),
                )
            )

        for name, phase in phases:
            logger.info("sync.phase.start", extra={"grafana": instance.label, "phase": name})
            try:
                result = await phase()
                summary[name] = _phase_summary(result)
                if result.has_failures:
                    logger.warning(
                        "sync.phase.partial",
                        extra={
                            "grafana": instance.label,
                            "phase": name,
                            "summary": format_failure_summary(result, "dashboard"),
                        },
                    )
            except Exception as exc:
                summary[name] = {"error": str(exc)}
                logger.error(
                    "sync.phase.failed",
                    extra={
                        "grafana": instance.label,
                        "phase": name,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
        return summary

    async def run_tick(self) -> Dict[str, Any]:
        """Sync all instances, then auto-configure recent test runs."""
        instances: List[GrafanaInstance] = await self.finders.find_grafana_instances()
        if not instances:
            logger.warning("sync.tick.no_grafana_instances")

        outcomes = await asyncio.gather(
            *(self.sync_instance(i) for i in instances), return_exceptions=True
        )
        grafanas: Dict[str, Any] = {}
        for instance, outcome in zip(instances, outcomes):
            if isinstance(outcome, Exception):
                grafanas[instance.label] = {"error": str(outcome)}
                logger.error(
                    "sync.instance.failed",
                    extra={
                        "grafana": instance.label,
                        "error": str(outcome),
                        "error_type": type(outcome).__name__,
                    },
                )
            else:
                grafanas[instance.label] = outcome

        autoconfig: Dict[str, Any]
        try:
            autoconfig = (await self.autoconfig.process_recent_test_runs()).to_dict()
        except Exception as exc:
            autoconfig = {"error": str(exc)}
            logger.error(
                "autoconfig.failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
        return {"grafanas": grafanas, "autoconfig": autoconfig}
