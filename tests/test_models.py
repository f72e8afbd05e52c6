"""Tests for store document models."""

from __future__ import annotations

from src.domain.models import (
    ApplicationDashboard,
    ApplicationDashboardVariable,
    AutoConfigDashboard,
    Datasource,
    GrafanaDashboard,
    Profile,
    TemplatingVariable,
    TestRun,
    new_document_id,
)


def _run(**overrides) -> TestRun:
    fields = {
        "testRunId": "run-1",
        "application": "shop",
        "testEnvironment": "acc",
        "testType": "load",
        "tags": ["jvm", "k8s"],
    }
    fields.update(overrides)
    return TestRun.from_document(fields)


def test_document_ids_use_meteor_alphabet():
    doc_id = new_document_id()
    assert len(doc_id) == 17
    assert not set(doc_id) & set("01IOUVl")


def test_unknown_fields_round_trip():
    """Fields this service does not model are written back untouched."""
    doc = {
        "_id": "abc",
        "testRunId": "run-1",
        "application": "shop",
        "testEnvironment": "acc",
        "annotations": "kept",
        "tags": None,
    }
    run = TestRun.from_document(doc)
    assert run.tags == []
    out = run.to_document()
    assert out["_id"] == "abc"
    assert out["annotations"] == "kept"
    assert out["testEnvironment"] == "acc"


def test_profile_matches_on_any_shared_tag():
    assert Profile(name="jvm", tags=["jvm"]).matches(_run())
    assert not Profile(name="db", tags=["postgres"]).matches(_run())
    assert not Profile(name="none", tags=[]).matches(_run())


def test_binding_normalizes_optional_fields():
    """Blank fan-out names and null flags read as unset."""
    binding = AutoConfigDashboard.from_document(
        {
            "profile": "jvm",
            "grafana": "default",
            "dashboardUid": "tmpl",
            "dashboardName": "JVM",
            "createSeparateDashboardForVariable": "  ",
            "readOnly": None,
            "removeTemplatingVariables": None,
            "setHardcodedValueForVariables": None,
        }
    )
    assert binding.fan_out_variable is None
    assert binding.read_only is False
    assert binding.remove_templating_variables is False
    assert binding.set_hardcoded_value_for_variables == []


def test_variable_values_are_distinct_strings_in_order():
    variable = ApplicationDashboardVariable(name="pod", values=["b", "a", "b", 3])
    assert variable.values == ["b", "a", "3"]


def test_application_dashboard_drops_reserved_variables():
    app = ApplicationDashboard.from_document(
        {
            "application": "shop",
            "testEnvironment": "acc",
            "grafana": "default",
            "dashboardUid": "u",
            "variables": [
                {"name": "system_under_test", "values": ["shop"]},
                {"name": "test_environment", "values": ["acc"]},
                {"name": "pod", "values": ["p1", "p2"]},
            ],
        }
    )
    assert [v.name for v in app.variables] == ["pod"]
    assert app.values_for("pod") == ["p1", "p2"]
    assert app.values_for("missing") == []
    assert app.snapshot_timeout == 4


def test_templating_variable_query_and_datasource_shapes():
    """Both the legacy string and the object forms are understood."""
    legacy = TemplatingVariable(name="a", query="SHOW TAG VALUES", datasource="Influx")
    modern = TemplatingVariable(
        name="b", query={"query": "label_values(up, job)"}, datasource={"uid": "prom"}
    )
    assert legacy.query_text == "SHOW TAG VALUES"
    assert legacy.datasource_name == "Influx"
    assert legacy.datasource_uid is None
    assert modern.query_text == "label_values(up, job)"
    assert modern.datasource_uid == "prom"
    assert modern.datasource_name is None
    assert TemplatingVariable(name="c").query_text == ""


def test_grafana_dashboard_body_and_template_detection():
    """A dict body is stored serialized; the template tag may live in the body."""
    record = GrafanaDashboard(
        grafana="default",
        uid="t",
        grafana_json={"dashboard": {"uid": "t", "tags": ["Perfana-Template"]}},
    )
    assert isinstance(record.grafana_json, str)
    assert record.body()["dashboard"]["uid"] == "t"
    assert record.is_template

    plain = GrafanaDashboard(grafana="default", uid="p", tags=["perfana"])
    assert plain.body() is None
    assert not plain.is_template


def test_grafana_dashboard_aliases():
    record = GrafanaDashboard.from_document(
        {"grafana": "default", "uid": "u", "id": 7, "usedBySUT": ["shop"]}
    )
    assert record.dashboard_id == 7
    assert record.used_by_sut == ["shop"]
    assert record.to_document()["usedBySUT"] == ["shop"]


def test_datasource_database_name_falls_back_to_json_data():
    assert Datasource(database="telegraf").database_name == "telegraf"
    ds = Datasource.model_validate({"type": "influxdb", "jsonData": {"dbName": "k6"}})
    assert ds.database_name == "k6"
