"""Templating variable resolution for a test run.

Given a template's mirrored templating variables, produce the concrete values
a generated dashboard needs for one test run:

1. seed ``system_under_test`` and ``test_environment`` from the run;
2. resolve every other variable in template order (``constant``,
   ``custom``/``interval`` option lists, or a datasource ``query``);
3. replace values wholesale for ``setHardcodedValueForVariables``;
4. keep only values matching ``matchRegexForVariables``.

A variable whose backend fails is logged and left out; resolution carries on
with the remaining variables.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from ..adapters.grafana import GrafanaClient
from ..datasources import BackendOptions, get_backend
from ..domain.errors import BackendQueryError, ConfigurationError, GrafanaApiError
from ..domain.matching import match_value, replace_dynamic_values, substitute_query
from ..domain.models import (
    SYSTEM_UNDER_TEST,
    TEST_ENVIRONMENT,
    ApplicationDashboardVariable,
    AutoConfigDashboard,
    GrafanaDashboard,
    TemplatingVariable,
    TestRun,
    is_reserved,
)

logger = logging.getLogger(__name__)


def split_options(text: str) -> List[str]:
    """Comma separated option list: trimmed, no empties, no duplicates."""
    values: List[str] = []
    for item in text.split(","):
        item = item.strip()
        if item and item not in values:
            values.append(item)
    return values


class VariableResolver:
    """Resolve templating variables against one Grafana instance.

    Parameters
    ----------
    client: GrafanaClient
        Client for the instance hosting the template and its datasources.
    options: BackendOptions
        Backend tunables.
    """

    def __init__(self, client: GrafanaClient, options: BackendOptions) -> None:
        self._client = client
        self._options = options

    async def resolve(
        self,
        test_run: TestRun,
        template: GrafanaDashboard,
        binding: AutoConfigDashboard,
    ) -> List[ApplicationDashboardVariable]:
        """Return the final variable list, reserved variables first."""
        variables: List[ApplicationDashboardVariable] = [
            ApplicationDashboardVariable(name=SYSTEM_UNDER_TEST, values=[test_run.application]),
            ApplicationDashboardVariable(
                name=TEST_ENVIRONMENT, values=[test_run.test_environment]
            ),
        ]
        for templating_variable in template.templating_variables:
            if is_reserved(templating_variable.name):
                continue
            try:
                values = await self._resolve_one(test_run, templating_variable, variables)
            except (
                BackendQueryError,
                ConfigurationError,
                GrafanaApiError,
                httpx.HTTPError,
            ) as exc:
                logger.error(
                    "autoconfig.variables.failed",
                    extra={
                        "variable": templating_variable.name,
                        "dashboard": template.name,
                        "error": str(exc),
                    },
                )
                continue
            if values is not None:
                variables.append(
                    ApplicationDashboardVariable(name=templating_variable.name, values=values)
                )

        variables = override_values(variables, binding, test_run)
        return filter_values_on_regex(variables, binding, test_run)

    async def _resolve_one(
        self,
        test_run: TestRun,
        variable: TemplatingVariable,
        resolved: List[ApplicationDashboardVariable],
    ) -> Optional[List[str]]:
        query = variable.query_text
        if variable.type == "constant":
            return [query]
        if variable.type in ("custom", "interval"):
            return split_options(query)
        if variable.type != "query":
            logger.warning(
                "autoconfig.variables.unsupported_type",
                extra={"variable": variable.name, "type": variable.type},
            )
            return None

        query = substitute_query(query, test_run, resolved)
        datasource = await self._client.get_datasource(
            uid=variable.datasource_uid, name=variable.datasource_name
        )
        backend = get_backend(self._client, datasource, self._options)
        if backend is None:
            logger.warning(
                "autoconfig.variables.unsupported_datasource",
                extra={"variable": variable.name, "datasource_type": datasource.type},
            )
            return []
        return await backend.resolve_variable_values(query, variable)


def override_values(
    variables: List[ApplicationDashboardVariable],
    binding: AutoConfigDashboard,
    test_run: TestRun,
) -> List[ApplicationDashboardVariable]:
    """Replace the values of variables named in ``setHardcodedValueForVariables``.

    Only variables that were resolved are overridden; each configured value
    may contain dynamic placeholders.
    """
    overrides = {h.name: h for h in binding.set_hardcoded_value_for_variables}
    if not overrides:
        return variables
    result: List[ApplicationDashboardVariable] = []
    for variable in variables:
        override = overrides.get(variable.name)
        if override is None:
            result.append(variable)
            continue
        result.append(
            ApplicationDashboardVariable(
                name=variable.name,
                values=[replace_dynamic_values(v, test_run) for v in override.values],
            )
        )
    return result


def filter_values_on_regex(
    variables: List[ApplicationDashboardVariable],
    binding: AutoConfigDashboard,
    test_run: TestRun,
) -> List[ApplicationDashboardVariable]:
    """Keep only values matching the binding's ``matchRegexForVariables``."""
    rules = binding.match_regex_for_variables
    if not rules:
        return variables
    names = {rule.name for rule in rules}
    result: List[ApplicationDashboardVariable] = []
    for variable in variables:
        if variable.name not in names:
            result.append(variable)
            continue
        result.append(
            ApplicationDashboardVariable(
                name=variable.name,
                values=[
                    v for v in variable.values if match_value(rules, variable.name, v, test_run)
                ],
            )
        )
    return result


def variable_values_found(variables: List[ApplicationDashboardVariable]) -> bool:
    """True when every non-reserved variable has a value, or there are none."""
    return all(len(v.values) > 0 for v in variables if not is_reserved(v.name))
