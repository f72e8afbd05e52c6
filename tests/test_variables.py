"""Tests for templating variable resolution and the datasource backends."""

from __future__ import annotations

import pytest

from src.autoconfig.variables import (
    VariableResolver,
    filter_values_on_regex,
    override_values,
    split_options,
    variable_values_found,
)
from src.datasources import BackendOptions, get_supported_types
from src.domain.models import (
    ApplicationDashboardVariable,
    AutoConfigDashboard,
    GrafanaDashboard,
    TestRun,
)

INFLUX_QUERY = (
    'SHOW TAG VALUES FROM "jvm" WITH KEY = "service" '
    "WHERE \"system_under_test\" = '$system_under_test'"
)


def _run() -> TestRun:
    return TestRun(
        test_run_id="run-1",
        application="shop",
        test_environment="acc",
        test_type="load",
        tags=["jvm"],
        variables=[{"name": "buildId", "value": "b7"}],
    )


def _binding(**overrides) -> AutoConfigDashboard:
    fields = {
        "profile": "jvm",
        "grafana": "default",
        "dashboard_uid": "tmpl",
        "dashboard_name": "JVM",
    }
    fields.update(overrides)
    return AutoConfigDashboard(**fields)


def _template(*templating) -> GrafanaDashboard:
    return GrafanaDashboard(
        grafana="default",
        uid="tmpl",
        name="JVM",
        tags=["perfana-template"],
        templating_variables=list(templating),
    )


def _as_dict(variables):
    return {v.name: v.values for v in variables}


@pytest.fixture
def resolver(grafana_client):
    return VariableResolver(grafana_client, BackendOptions(prometheus_range_days=2))


def test_builtin_backends_registered():
    """InfluxDB, Prometheus and Graphite are available by datasource type."""
    assert set(get_supported_types()) >= {"influxdb", "prometheus", "graphite"}


def test_split_options_trims_and_dedupes():
    """Custom variables are comma separated lists."""
    assert split_options(" p50, p95 ,,p50 ") == ["p50", "p95"]


@pytest.mark.asyncio
async def test_resolve_seeds_reserved_variables_and_static_kinds(resolver):
    """Reserved variables come first; constant and custom need no backend."""
    template = _template(
        {"name": "system_under_test", "type": "constant", "query": "ignored"},
        {"name": "unit", "type": "constant", "query": "ms"},
        {"name": "percentile", "type": "custom", "query": "p50, p95"},
        {"name": "interval", "type": "interval", "query": "1m,5m"},
        {"name": "ds", "type": "datasource", "query": "influxdb"},
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert [v.name for v in variables] == [
        "system_under_test",
        "test_environment",
        "unit",
        "percentile",
        "interval",
    ]
    assert _as_dict(variables)["system_under_test"] == ["shop"]
    assert _as_dict(variables)["test_environment"] == ["acc"]
    assert _as_dict(variables)["percentile"] == ["p50", "p95"]


@pytest.mark.asyncio
async def test_resolve_influxdb_query_substitutes_run_fields(resolver, grafana):
    """The InfluxQL query is sent with the run's application filled in."""
    grafana.add_datasource("influx-uid", "Influx", "influxdb", jsonData={"dbName": "perf"})
    grafana.influx[INFLUX_QUERY.replace("$system_under_test", "shop")] = [
        ["service", "api"],
        ["service", "web"],
        ["service", "api"],
    ]
    template = _template(
        {
            "name": "service",
            "type": "query",
            "query": {"query": INFLUX_QUERY, "refId": "A"},
            "datasource": {"uid": "influx-uid", "type": "influxdb"},
        }
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert _as_dict(variables)["service"] == ["api", "web"]

    proxy_calls = [r for r in grafana.requests if r.url.path.endswith("/query")]
    assert proxy_calls[0].url.params["db"] == "perf"


@pytest.mark.asyncio
async def test_resolve_influxdb_measurements_with_variable_regex(resolver, grafana):
    """Single-column rows are used as is and the variable regex filters them."""
    grafana.add_datasource("influx-uid", "Influx", "influxdb", database="perf")
    grafana.influx["SHOW MEASUREMENTS"] = [["jvm_heap"], ["jvm_gc"], ["cpu"]]
    template = _template(
        {
            "name": "measurement",
            "type": "query",
            "query": "SHOW MEASUREMENTS",
            "regex": "/^jvm_/",
            "datasource": {"uid": "influx-uid"},
        }
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert _as_dict(variables)["measurement"] == ["jvm_heap", "jvm_gc"]


@pytest.mark.asyncio
async def test_resolve_prometheus_series_uses_earlier_variables(resolver, grafana):
    """A later query sees the values of variables resolved before it."""
    grafana.add_datasource("prom-uid", "Prom", "prometheus")
    grafana.prometheus_series = [
        {"__name__": "up", "pod": "api-1"},
        {"__name__": "up", "pod": "web-1"},
        {"__name__": "up", "instance": "x"},
    ]
    template = _template(
        {"name": "service", "type": "custom", "query": "api,web"},
        {
            "name": "pod",
            "type": "query",
            "query": 'label_values(up{service=~"$service"}, pod)',
            "datasource": "Prom",
        },
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert _as_dict(variables)["pod"] == ["api-1", "web-1"]

    series_call = next(r for r in grafana.requests if r.url.path.endswith("/api/v1/series"))
    assert series_call.url.params["match[]"] == 'up{service=~"api|web"}'
    assert int(series_call.url.params["end"]) > int(series_call.url.params["start"])


@pytest.mark.asyncio
async def test_resolve_prometheus_regex_drops_non_matching_and_keeps_groups(resolver, grafana):
    """Capture groups become the value; non-matching series are dropped."""
    grafana.add_datasource("prom-uid", "Prom", "prometheus")
    grafana.prometheus_series = [{"pod": "api-1"}, {"pod": "api-2"}, {"pod": "db-1"}]
    template = _template(
        {
            "name": "pod",
            "type": "query",
            "query": "label_values(up, pod)",
            "regex": "/(api)-(\\d)/",
            "datasource": {"uid": "prom-uid"},
        }
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert _as_dict(variables)["pod"] == ["api1", "api2"]


@pytest.mark.asyncio
async def test_resolve_prometheus_label_values(resolver, grafana):
    """``label_values(label)`` asks for the label's values directly."""
    grafana.add_datasource("prom-uid", "Prom", "prometheus")
    grafana.prometheus_labels["job"] = ["node", "app"]
    template = _template(
        {
            "name": "job",
            "type": "query",
            "query": "label_values(job)",
            "datasource": {"uid": "prom-uid"},
        }
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert _as_dict(variables)["job"] == ["node", "app"]


@pytest.mark.asyncio
async def test_resolve_graphite(resolver, grafana):
    """Graphite find results contribute their ``text``."""
    grafana.add_datasource("gr-uid", "Graphite", "graphite")
    grafana.graphite["servers.shop.*"] = [{"text": "host1"}, {"text": "host2"}, {"id": "x"}]
    template = _template(
        {
            "name": "host",
            "type": "query",
            "query": "servers.$system_under_test.*",
            "datasource": {"uid": "gr-uid"},
        }
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert _as_dict(variables)["host"] == ["host1", "host2"]


@pytest.mark.asyncio
async def test_failed_backend_leaves_variable_out(resolver, grafana):
    """A failing datasource lookup skips only that variable."""
    template = _template(
        {
            "name": "service",
            "type": "query",
            "query": "SHOW MEASUREMENTS",
            "datasource": {"uid": "missing"},
        },
        {"name": "unit", "type": "constant", "query": "ms"},
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert "service" not in _as_dict(variables)
    assert _as_dict(variables)["unit"] == ["ms"]


@pytest.mark.asyncio
async def test_unsupported_datasource_resolves_to_no_values(resolver, grafana):
    """Unknown datasource types yield an empty value list."""
    grafana.add_datasource("es-uid", "Elastic", "elasticsearch")
    template = _template(
        {
            "name": "index",
            "type": "query",
            "query": "*",
            "datasource": {"uid": "es-uid"},
        }
    )
    variables = await resolver.resolve(_run(), template, _binding())
    assert _as_dict(variables)["index"] == []
    assert not variable_values_found(variables)


@pytest.mark.asyncio
async def test_resolve_applies_overrides_then_regex(resolver):
    """Hardcoded values replace resolved ones before regex filtering."""
    template = _template(
        {"name": "service", "type": "custom", "query": "api,web,db"},
        {"name": "build", "type": "constant", "query": "none"},
    )
    binding = _binding(
        set_hardcoded_value_for_variables=[{"name": "build", "values": ["{buildId}", "latest"]}],
        match_regex_for_variables=[{"name": "service", "regex": "^(api|web)$"}],
    )
    variables = await resolver.resolve(_run(), template, binding)
    assert _as_dict(variables)["build"] == ["b7", "latest"]
    assert _as_dict(variables)["service"] == ["api", "web"]


def test_override_values_only_touches_resolved_variables():
    """Overrides for variables the template lacks are ignored."""
    variables = [ApplicationDashboardVariable(name="service", values=["api"])]
    binding = _binding(
        set_hardcoded_value_for_variables=[{"name": "missing", "values": ["x"]}]
    )
    assert _as_dict(override_values(variables, binding, _run())) == {"service": ["api"]}


def test_filter_values_on_regex_invalid_pattern_matches_literally():
    """A broken regex is matched as literal text."""
    variables = [ApplicationDashboardVariable(name="service", values=["api[", "api"])]
    binding = _binding(match_regex_for_variables=[{"name": "service", "regex": "api["}])
    result = filter_values_on_regex(variables, binding, _run())
    assert _as_dict(result)["service"] == ["api["]


def test_variable_values_found():
    """Every non-reserved variable needs at least one value."""
    reserved = [ApplicationDashboardVariable(name="system_under_test", values=[])]
    assert variable_values_found(reserved)
    assert variable_values_found(
        reserved + [ApplicationDashboardVariable(name="a", values=["1"])]
    )
    assert not variable_values_found(
        [
            ApplicationDashboardVariable(name="a", values=["1"]),
            ApplicationDashboardVariable(name="b", values=[]),
        ]
    )
