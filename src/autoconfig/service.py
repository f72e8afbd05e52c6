"""Auto-configuration of Grafana dashboards for recent test runs.

For every recently finished, tagged test run the service finds the profiles
matching the run's tags and, for each binding of those profiles:

1. checks that the bound dashboard is a mirrored template;
2. resolves the template's variables for the run;
3. splits them into variable sets (one per fan-out value, or a single set);
4. per set derives the dashboard identity and either updates the recorded
   application dashboards in place or creates (or reuses) the Grafana
   dashboard and records a new application dashboard.

Afterwards benchmarks, deep links and report panels are derived from the
profile's generic records.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..adapters.context import SyncContext
from ..adapters.grafana import GrafanaClient
from ..datasources import BackendOptions
from ..domain.errors import ConfigurationError, GrafanaApiError, TemplateDashboardError
from ..domain.identity import candidate_dashboard_uids, derive_dashboard_uid
from ..domain.matching import replace_dynamic_values
from ..domain.models import (
    TEMPLATE_TAG,
    ApplicationDashboard,
    ApplicationDashboardVariable,
    AutoConfigDashboard,
    GrafanaDashboard,
    Profile,
    TestRun,
    is_reserved,
)
from ..sync.store import DashboardMirror, Provenance
from ..utils.timestamps import minutes_ago, parse_timestamp, utc_now
from .dependents import DependentRecords
from .finders import MetadataFinders
from .updates import MetadataUpdates
from .variables import VariableResolver, variable_values_found

logger = logging.getLogger(__name__)

PERFANA_INFO = "Created or updated by perfana-grafana-sync"


@dataclass
class AutoConfigSummary:
    """Counters for one auto-configuration pass."""

    test_runs: int = 0
    bindings: int = 0
    binding_failures: int = 0
    test_run_failures: int = 0
    benchmarks: int = 0
    deep_links: int = 0
    report_panels: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# ---------------- Pure helpers ----------------
def variable_sets(
    fan_out: Optional[str], variables: List[ApplicationDashboardVariable]
) -> List[List[ApplicationDashboardVariable]]:
    """Partition resolved variables into the sets to provision.

    Without fan-out there is one set. With fan-out there is one set per value
    of the fan-out variable, holding the other variables plus the fan-out
    variable narrowed to that value.

    Raises
    ------
    ConfigurationError
        When the fan-out variable is not resolved exactly once.
    """
    if not fan_out:
        return [list(variables)]
    others = [v for v in variables if v.name != fan_out]
    matches = [v for v in variables if v.name == fan_out]
    if len(matches) != 1:
        raise ConfigurationError(
            f"Expected exactly one resolved variable named {fan_out!r}, found {len(matches)}"
        )
    return [
        others + [ApplicationDashboardVariable(name=fan_out, values=[value])]
        for value in matches[0].values
    ]


def fan_out_value(
    binding: AutoConfigDashboard, variables: List[ApplicationDashboardVariable]
) -> Optional[str]:
    """The single fan-out value carried by a variable set, if any."""
    if not binding.fan_out_variable:
        return None
    for variable in variables:
        if variable.name == binding.fan_out_variable and variable.values:
            return variable.values[0]
    return None


def dashboard_label(
    binding: AutoConfigDashboard, variables: List[ApplicationDashboardVariable]
) -> str:
    """``dashboardName``, suffixed with the fan-out value for fan-out sets."""
    value = fan_out_value(binding, variables)
    if value is None:
        return binding.dashboard_name
    return f"{binding.dashboard_name} {value}"


def stored_variables(
    variables: List[ApplicationDashboardVariable],
) -> List[ApplicationDashboardVariable]:
    return [v for v in variables if not is_reserved(v.name)]


def check_if_update_required(
    binding: AutoConfigDashboard,
    variables: List[ApplicationDashboardVariable],
    existing: List[ApplicationDashboard],
    mirror_uid: str,
) -> bool:
    """Decide whether recorded application dashboards are out of date.

    Fan-out: required when ``mirror_uid`` is not among the recorded
    identities. Otherwise: required when nothing is recorded or a recorded
    variable has fewer values than the resolved one.
    """
    if binding.fan_out_variable:
        return mirror_uid not in [d.dashboard_uid for d in existing]
    if not existing:
        return True
    resolved = {v.name: v.values for v in variables}
    for dashboard in existing:
        for recorded in dashboard.variables:
            values = resolved.get(recorded.name)
            if values is not None and len(recorded.values) < len(values):
                return True
    return False


def check_existing_values(
    binding: AutoConfigDashboard,
    variables: List[ApplicationDashboardVariable],
    existing: List[ApplicationDashboard],
) -> List[str]:
    """Fan-out values that already have a recorded application dashboard."""
    fan_out = binding.fan_out_variable
    if not fan_out:
        return []
    if not any(v.name == fan_out for v in stored_variables(variables)):
        return []
    values: List[str] = []
    for dashboard in existing:
        for value in dashboard.values_for(fan_out):
            if value not in values:
                values.append(value)
    return values


def fan_out_variables(
    binding: AutoConfigDashboard,
    variables: List[ApplicationDashboardVariable],
    value: str,
    test_run: TestRun,
) -> List[ApplicationDashboardVariable]:
    """Variables recorded for one fan-out instance.

    Every ``setHardcodedValueForVariables`` entry comes first, whether or not
    the template declares it. Then the resolved variables that are not
    hardcoded follow, with the fan-out variable narrowed to ``value``.
    Reserved variables are dropped.
    """
    result: List[ApplicationDashboardVariable] = [
        ApplicationDashboardVariable(
            name=h.name,
            values=[replace_dynamic_values(v, test_run) for v in h.values],
        )
        for h in binding.set_hardcoded_value_for_variables
        if not is_reserved(h.name)
    ]
    hardcoded = {v.name for v in result}
    for variable in stored_variables(variables):
        if variable.name in hardcoded:
            continue
        if variable.name == binding.fan_out_variable:
            result.append(ApplicationDashboardVariable(name=variable.name, values=[value]))
        else:
            result.append(variable)
    return result


def folder_uid(application: str) -> str:
    return application.lower().replace(" ", "-")


class AutoConfigService:
    """Provision generated dashboards and their dependent records.

    Parameters
    ----------
    context: SyncContext
        Store connections, settings and Grafana clients.
    """

    def __init__(self, context: SyncContext) -> None:
        self._context = context
        self.finders = MetadataFinders(context.store)
        self.updates = MetadataUpdates(context.store)
        self.mirror = DashboardMirror(self.finders, self.updates)
        self.dependents = DependentRecords(self.finders, self.updates)
        self._backend_options = BackendOptions(
            prometheus_range_days=context.settings.prometheus_variables_query_time_range_days
        )

    async def process_recent_test_runs(self) -> AutoConfigSummary:
        """Auto-configure every tagged test run that ended within the look-back window."""
        summary = AutoConfigSummary()
        since = minutes_ago(self._context.settings.auto_config_lookback_minutes)
        logger.info("autoconfig.start", extra={"since": since.isoformat()})

        test_runs = await self.finders.find_recent_test_runs(since)
        tagged: List[TestRun] = []
        for test_run in test_runs:
            if test_run.tags:
                tagged.append(test_run)
            else:
                logger.debug(
                    "autoconfig.test_run.untagged",
                    extra={"test_run_id": test_run.test_run_id},
                )
        if not tagged:
            logger.info("autoconfig.skipped", extra={"reason": "no_recent_test_runs"})
            return summary

        profiles = await self.finders.find_profiles()
        if not profiles:
            logger.info("autoconfig.skipped", extra={"reason": "no_profiles"})
            return summary

        bindings = await self.finders.find_auto_config_dashboards()
        checks = await self.finders.find_generic_checks()
        deep_links = await self.finders.find_generic_deep_links()
        report_panels = await self.finders.find_generic_report_panels()

        for test_run in tagged:
            summary.test_runs += 1
            try:
                await self._process_test_run(
                    test_run, profiles, bindings, checks, deep_links, report_panels, summary
                )
            except Exception as exc:
                summary.test_run_failures += 1
                logger.error(
                    "autoconfig.test_run.failed",
                    extra={
                        "test_run_id": test_run.test_run_id,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )

        logger.info("autoconfig.complete", extra=summary.to_dict())
        return summary

    async def _process_test_run(
        self,
        test_run: TestRun,
        profiles: List[Profile],
        bindings: List[AutoConfigDashboard],
        checks: List[Any],
        deep_links: List[Any],
        report_panels: List[Any],
        summary: AutoConfigSummary,
    ) -> None:
        profile_names = [p.name for p in profiles if p.matches(test_run)]
        logger.info(
            "autoconfig.test_run.processing",
            extra={"test_run_id": test_run.test_run_id, "profiles": profile_names},
        )

        for binding in bindings:
            if binding.profile not in profile_names:
                continue
            summary.bindings += 1
            try:
                await self.process_binding(test_run, binding)
            except Exception as exc:
                summary.binding_failures += 1
                logger.error(
                    "autoconfig.binding.failed",
                    extra={
                        "test_run_id": test_run.test_run_id,
                        "binding": binding.dashboard_name,
                        "template_uid": binding.dashboard_uid,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )

        summary.benchmarks += await self.dependents.process_generic_checks(
            test_run, profile_names, checks
        )
        summary.deep_links += await self.dependents.process_generic_deep_links(
            test_run, profile_names, deep_links
        )
        summary.report_panels += await self.dependents.process_generic_report_panels(
            test_run, profile_names, report_panels
        )

    async def process_binding(self, test_run: TestRun, binding: AutoConfigDashboard) -> None:
        """Provision one binding for one test run.

        Raises
        ------
        TemplateDashboardError
            When the bound dashboard is not a template or has no stored body.
        """
        template = await self.finders.find_grafana_dashboard_or_none(
            binding.grafana, [binding.dashboard_uid]
        )
        if template is None:
            logger.error(
                "autoconfig.binding.template_missing",
                extra={"grafana": binding.grafana, "template_uid": binding.dashboard_uid},
            )
            return
        if not template.is_template:
            raise TemplateDashboardError(
                f"Expected a template dashboard, it is not: {binding.dashboard_uid}"
            )
        if not template.grafana_json:
            raise TemplateDashboardError(
                f"No template json found for dashboard with uid: {binding.dashboard_uid}"
            )

        instance = await self.finders.find_grafana_instance(binding.grafana)
        client = self._context.grafana_client(instance)
        resolver = VariableResolver(client, self._backend_options)
        variables = await resolver.resolve(test_run, template, binding)
        logger.info(
            "autoconfig.variables.resolved",
            extra={
                "binding": binding.dashboard_name,
                "variables": {v.name: v.values for v in variables},
            },
        )

        if not variable_values_found(variables):
            logger.info(
                "autoconfig.binding.skipped",
                extra={"binding": binding.dashboard_name, "reason": "no_variable_values"},
            )
            return

        for variable_set in variable_sets(binding.fan_out_variable, variables):
            await self._reconcile(client, test_run, binding, variable_set)

    async def _reconcile(
        self,
        client: GrafanaClient,
        test_run: TestRun,
        binding: AutoConfigDashboard,
        variables: List[ApplicationDashboardVariable],
    ) -> None:
        label = dashboard_label(binding, variables)
        candidates = candidate_dashboard_uids(test_run, binding, variables)
        existing = await self.finders.find_application_dashboards(
            test_run, binding.grafana, candidates, label
        )

        if existing:
            matched_uid = existing[0].dashboard_uid
            if matched_uid != candidates[0]:
                logger.warning(
                    "autoconfig.identity.legacy_match",
                    extra={"label": label, "matched_uid": matched_uid, "current_uid": candidates[0]},
                )
            mirror = await self.finders.find_grafana_dashboard_or_none(
                binding.grafana, [matched_uid]
            )
            if mirror is not None:
                await self.store_application_dashboards(
                    mirror, test_run, binding, variables, existing, update=True
                )
                return
            # The generated dashboard is gone; start over from the template
            logger.warning(
                "autoconfig.mirror.missing",
                extra={"label": label, "dashboard_uid": matched_uid},
            )
            await self.updates.delete_application_dashboards([d.doc_id for d in existing])

        identity = derive_dashboard_uid(test_run, binding, variables)
        mirrors = await self.finders.find_grafana_dashboards(binding.grafana, [identity])
        if not mirrors or binding.read_only:
            mirror = await self.create_dashboard(client, test_run, binding, variables, label)
        else:
            mirror = mirrors[0]
        await self.store_application_dashboards(
            mirror, test_run, binding, variables, [], update=False
        )

    async def create_dashboard(
        self,
        client: GrafanaClient,
        test_run: TestRun,
        binding: AutoConfigDashboard,
        variables: List[ApplicationDashboardVariable],
        label: str,
    ) -> GrafanaDashboard:
        """Create the generated dashboard in Grafana (or reuse a read-only template).

        Returns the mirror record of the dashboard the application will use.
        """
        if binding.read_only:
            template = await self.finders.find_grafana_dashboard(
                binding.grafana, [binding.dashboard_uid]
            )
            await self.updates.add_used_by_sut(template, test_run.application)
            logger.info(
                "autoconfig.dashboard.reused",
                extra={"template_uid": template.uid, "application": test_run.application},
            )
            return await self.finders.find_grafana_dashboard(
                binding.grafana, [binding.dashboard_uid]
            )

        template_body = await client.get_dashboard(binding.dashboard_uid)
        folder_id = await self.create_or_find_folder(client, test_run)
        source = dict(template_body.get("dashboard") or {})
        uid = derive_dashboard_uid(test_run, binding, variables)
        source.update(
            id=None,
            uid=uid,
            title=f"{label} - {test_run.application} {test_run.test_environment}",
            tags=[
                t
                for t in (source.get("tags") or [])
                if not (isinstance(t, str) and t.lower() == TEMPLATE_TAG)
            ],
        )
        await client.post_dashboard({"dashboard": source, "folderId": folder_id, "overwrite": False})
        logger.info(
            "autoconfig.dashboard.created",
            extra={"grafana": client.label, "uid": uid, "title": source["title"]},
        )

        created = await client.get_dashboard(uid)
        meta = created.get("meta") or {}
        return await self.mirror.store(
            client,
            created,
            update=False,
            used_by_sut=[test_run.application],
            provenance=Provenance(
                template_dashboard_uid=binding.dashboard_uid,
                template_profile=binding.profile,
                template_test_run_variables=[v.model_dump() for v in test_run.variables],
                template_create_date=parse_timestamp(meta.get("updated")) or utc_now(),
                application_dashboard_variables=list(variables),
            ),
        )

    async def create_or_find_folder(self, client: GrafanaClient, test_run: TestRun) -> int:
        """Folder id for the run's application; 0 (General) when that fails.

        The folder is looked up by uid and created only when Grafana answers
        404 for it.
        """
        uid = folder_uid(test_run.application)
        try:
            try:
                return (await client.get_folder(uid))["id"]
            except GrafanaApiError as exc:
                if exc.status_code != 404:
                    raise
            created = await client.create_folder(test_run.application, uid)
            logger.info(
                "autoconfig.folder.created",
                extra={"application": test_run.application, "folder_id": created.get("id")},
            )
            return created["id"]
        except Exception as exc:
            logger.error(
                "autoconfig.folder.failed",
                extra={
                    "application": test_run.application,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return 0

    async def store_application_dashboards(
        self,
        mirror: GrafanaDashboard,
        test_run: TestRun,
        binding: AutoConfigDashboard,
        variables: List[ApplicationDashboardVariable],
        existing: List[ApplicationDashboard],
        *,
        update: bool,
    ) -> int:
        """Record (or update) application dashboards pointing at ``mirror``.

        Returns the number of records inserted or updated.
        """
        required = check_if_update_required(binding, variables, existing, mirror.uid)
        if existing and not required:
            logger.debug(
                "autoconfig.application_dashboard.up_to_date",
                extra={"dashboard_uid": mirror.uid, "application": test_run.application},
            )
            return 0
        if binding.fan_out_variable:
            return await self._store_fan_out(mirror, test_run, binding, variables, existing)
        return await self._store_one(mirror, test_run, binding, variables, existing, update)

    def _new_application_dashboard(
        self,
        mirror: GrafanaDashboard,
        test_run: TestRun,
        binding: AutoConfigDashboard,
        label: str,
        variables: List[ApplicationDashboardVariable],
    ) -> ApplicationDashboard:
        return ApplicationDashboard(
            application=test_run.application,
            test_environment=test_run.test_environment,
            grafana=mirror.grafana,
            dashboard_name=mirror.name,
            dashboard_id=mirror.dashboard_id,
            dashboard_uid=mirror.uid,
            dashboard_label=label,
            template_dashboard_uid=binding.dashboard_uid,
            tags=list(mirror.tags),
            variables=variables,
            snapshot_timeout=4,
            perfana_info=f"{PERFANA_INFO} {utc_now().isoformat()}",
        )

    async def _store_one(
        self,
        mirror: GrafanaDashboard,
        test_run: TestRun,
        binding: AutoConfigDashboard,
        variables: List[ApplicationDashboardVariable],
        existing: List[ApplicationDashboard],
        update: bool,
    ) -> int:
        recorded = stored_variables(variables)
        if update:
            for dashboard in existing:
                await self.updates.update_application_dashboard_variables(
                    dashboard.doc_id, recorded
                )
            logger.info(
                "autoconfig.application_dashboard.updated",
                extra={"dashboard_uid": mirror.uid, "count": len(existing)},
            )
            return len(existing)

        found = await self.finders.find_application_dashboards(
            test_run, mirror.grafana, [mirror.uid], binding.dashboard_name
        )
        if found:
            return 0
        await self.updates.insert_application_dashboard(
            self._new_application_dashboard(
                mirror, test_run, binding, binding.dashboard_name, recorded
            )
        )
        logger.info(
            "autoconfig.application_dashboard.created",
            extra={
                "dashboard_uid": mirror.uid,
                "label": binding.dashboard_name,
                "application": test_run.application,
            },
        )
        return 1

    async def _store_fan_out(
        self,
        mirror: GrafanaDashboard,
        test_run: TestRun,
        binding: AutoConfigDashboard,
        variables: List[ApplicationDashboardVariable],
        existing: List[ApplicationDashboard],
    ) -> int:
        fan_out = next((v for v in variables if v.name == binding.fan_out_variable), None)
        if fan_out is None:
            return 0
        already = check_existing_values(binding, variables, existing)
        created = 0
        for value in fan_out.values:
            if value in already:
                continue
            label = f"{binding.dashboard_name} {value}"
            found = await self.finders.find_application_dashboards(
                test_run, mirror.grafana, [mirror.uid], label
            )
            if found:
                continue
            await self.updates.insert_application_dashboard(
                self._new_application_dashboard(
                    mirror,
                    test_run,
                    binding,
                    label,
                    fan_out_variables(binding, variables, value, test_run),
                )
            )
            created += 1
            logger.info(
                "autoconfig.application_dashboard.created",
                extra={
                    "dashboard_uid": mirror.uid,
                    "label": label,
                    "application": test_run.application,
                },
            )
        return created
