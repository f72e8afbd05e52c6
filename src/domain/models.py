"""Document models for the Perfana metadata store.

Every persisted entity keeps its camelCase field names byte-for-byte because
the Perfana UI and reporting read the same collections. Models accept the raw
Mongo documents (``Model.from_document``), keep unknown fields untouched
(``extra="allow"``) and write back with ``to_document`` using the original
aliases.
"""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from ..utils import serialization

SYSTEM_UNDER_TEST = "system_under_test"
TEST_ENVIRONMENT = "test_environment"
RESERVED_VARIABLES = (SYSTEM_UNDER_TEST, TEST_ENVIRONMENT)

TEMPLATE_TAG = "perfana-template"
PERFANA_TAG = "perfana"

# Character set of Meteor-style string ids used throughout Perfana
_ID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTWXYZabcdefghijkmnopqrstuvwxyz"


def new_document_id(length: int = 17) -> str:
    """Return a random Meteor-compatible document id."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def is_reserved(name: str) -> bool:
    """True for the variables derived directly from the test run."""
    return name in RESERVED_VARIABLES


def has_tag(tags: Optional[List[str]], tag: str) -> bool:
    """Case-insensitive tag membership test."""
    return any(t.lower() == tag for t in (tags or []) if isinstance(t, str))


class Collections:
    """Logical collection names in the Perfana database."""

    TEST_RUNS = "testRuns"
    PROFILES = "profiles"
    AUTO_CONFIG_DASHBOARDS = "autoConfigGrafanaDashboards"
    GRAFANA_DASHBOARDS = "grafanaDashboards"
    APPLICATION_DASHBOARDS = "applicationDashboards"
    GRAFANAS = "grafanas"
    GENERIC_CHECKS = "genericChecks"
    GENERIC_DEEP_LINKS = "genericDeepLinks"
    GENERIC_REPORT_PANELS = "genericReportPanels"
    BENCHMARKS = "benchmarks"
    DEEP_LINKS = "deepLinks"
    REPORT_PANELS = "reportPanels"


class Document(BaseModel):
    """Base for all stored documents.

    Field names are snake_case in Python and camelCase in storage. The Mongo
    primary key is exposed as ``doc_id``.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    doc_id: Optional[Any] = Field(default=None, alias="_id")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        """Validate a raw store document into this model."""
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        """Dump to a store document using the persisted field names."""
        return self.model_dump(by_alias=True, exclude_none=True)


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


# Mongo documents written by older releases store null for empty lists
NoneAsEmpty = BeforeValidator(_none_to_list)


class TestRunVariable(BaseModel):
    """Free-form ``{name, value}`` pair recorded on a test run."""

    __test__ = False

    model_config = ConfigDict(extra="allow")

    name: str
    value: Any = None


class TestRun(Document):
    """A completed performance test as recorded by the test execution system."""

    __test__ = False

    test_run_id: str
    application: str
    test_environment: str
    test_type: str = ""
    tags: Annotated[List[str], NoneAsEmpty] = Field(default_factory=list)
    variables: Annotated[List[TestRunVariable], NoneAsEmpty] = Field(
        default_factory=list
    )
    end: Optional[datetime] = None


class Profile(Document):
    """Tag-matching rule that activates bindings and generic records."""

    name: str
    tags: Annotated[List[str], NoneAsEmpty] = Field(default_factory=list)

    def matches(self, test_run: TestRun) -> bool:
        """True when the profile shares at least one tag with the run."""
        return bool(set(self.tags) & set(test_run.tags))


class HardcodedVariable(BaseModel):
    """Override entry: replace a variable's values wholesale."""

    name: str
    values: List[str] = Field(default_factory=list)


class VariableRegex(BaseModel):
    """Filter entry: keep only values matching ``regex``."""

    name: str
    regex: str = ""


class AutoConfigDashboard(Document):
    """Binding between a profile, a template dashboard and instantiation rules."""

    profile: str
    grafana: str
    dashboard_uid: str
    dashboard_name: str
    read_only: bool = False
    create_separate_dashboard_for_variable: Optional[str] = None
    set_hardcoded_value_for_variables: Annotated[
        List[HardcodedVariable], NoneAsEmpty
    ] = Field(default_factory=list)
    match_regex_for_variables: Annotated[List[VariableRegex], NoneAsEmpty] = Field(
        default_factory=list
    )
    remove_templating_variables: bool = False

    @field_validator("create_separate_dashboard_for_variable", mode="before")
    @classmethod
    def _blank_fan_out_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("read_only", "remove_templating_variables", mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @property
    def fan_out_variable(self) -> Optional[str]:
        """Name of the variable to fan out on, if any."""
        return self.create_separate_dashboard_for_variable


class ApplicationDashboardVariable(BaseModel):
    """Resolved templating variable: a name and its ordered distinct values."""

    name: str
    values: List[str] = Field(default_factory=list)

    @field_validator("values", mode="before")
    @classmethod
    def _dedupe(cls, value: Any) -> Any:
        if value is None:
            return []
        seen: List[str] = []
        for item in value:
            text = item if isinstance(item, str) else str(item)
            if text not in seen:
                seen.append(text)
        return seen


class TemplatingVariable(BaseModel):
    """Templating variable as mirrored from a Grafana dashboard."""

    model_config = ConfigDict(extra="allow")

    name: str
    type: str = ""
    query: Any = None
    datasource: Any = None
    regex: Optional[str] = None
    options: Optional[List[Any]] = None

    @property
    def query_text(self) -> str:
        """Query string; Grafana 7.4+ stores queries as ``{"query": ...}``."""
        if isinstance(self.query, dict):
            return str(self.query.get("query") or "")
        return "" if self.query is None else str(self.query)

    @property
    def datasource_uid(self) -> Optional[str]:
        if isinstance(self.datasource, dict):
            return self.datasource.get("uid")
        return None

    @property
    def datasource_name(self) -> Optional[str]:
        if isinstance(self.datasource, str) and self.datasource:
            return self.datasource
        return None


class Panel(BaseModel):
    """Panel summary stored on a mirror record."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    id: Optional[int] = None
    title: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    y_axes_format: Optional[str] = None
    repeat: Optional[str] = None


class GrafanaDashboard(Document):
    """Mirror record of a dashboard stored in a Grafana instance."""

    grafana: str
    uid: str
    name: str = ""
    dashboard_id: Optional[int] = Field(default=None, alias="id")
    tags: Annotated[List[str], NoneAsEmpty] = Field(default_factory=list)
    slug: Optional[str] = None
    uri: Optional[str] = None
    datasource_type: Optional[str] = None
    template_dashboard_uid: Optional[str] = None
    template_profile: Optional[str] = None
    template_test_run_variables: Optional[List[Any]] = None
    template_create_date: Optional[datetime] = None
    application_dashboard_variables: Optional[
        List[ApplicationDashboardVariable]
    ] = None
    panels: Annotated[List[Panel], NoneAsEmpty] = Field(default_factory=list)
    variables: Annotated[List[Dict[str, Any]], NoneAsEmpty] = Field(
        default_factory=list
    )
    templating_variables: Annotated[List[TemplatingVariable], NoneAsEmpty] = Field(
        default_factory=list
    )
    used_by_sut: Annotated[List[str], NoneAsEmpty] = Field(
        default_factory=list, alias="usedBySUT"
    )
    updated: Optional[datetime] = None
    grafana_json: Optional[str] = None

    @field_validator("grafana_json", mode="before")
    @classmethod
    def _serialize_body(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return serialization.dumps(value)
        return value

    @property
    def is_template(self) -> bool:
        """True when the dashboard carries the ``perfana-template`` tag."""
        if has_tag(self.tags, TEMPLATE_TAG):
            return True
        body = self.body()
        dashboard = (body or {}).get("dashboard") or {}
        return has_tag(dashboard.get("tags"), TEMPLATE_TAG)

    def body(self) -> Optional[Dict[str, Any]]:
        """Return the parsed Grafana API response, or None when absent."""
        if not self.grafana_json:
            return None
        return serialization.loads(self.grafana_json)


class ApplicationDashboard(Document):
    """Generated dashboard instance for one application and environment."""

    application: str
    test_environment: str
    grafana: str
    dashboard_uid: str
    dashboard_name: str = ""
    dashboard_label: str = ""
    dashboard_id: Optional[int] = None
    template_dashboard_uid: Optional[str] = None
    variables: Annotated[List[ApplicationDashboardVariable], NoneAsEmpty] = Field(
        default_factory=list
    )
    tags: Annotated[List[str], NoneAsEmpty] = Field(default_factory=list)
    snapshot_timeout: int = 4
    perfana_info: Optional[str] = None

    @model_validator(mode="after")
    def _drop_reserved_variables(self) -> "ApplicationDashboard":
        self.variables = [v for v in self.variables if not is_reserved(v.name)]
        return self

    def values_for(self, name: str) -> List[str]:
        """Recorded values for variable ``name`` (empty if not recorded)."""
        for variable in self.variables:
            if variable.name == name:
                return list(variable.values)
        return []


class GrafanaInstance(Document):
    """Connection descriptor of one Grafana instance (``grafanas``)."""

    label: str
    server_url: Optional[str] = None
    client_url: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def base_url(self) -> Optional[str]:
        """Server URL wins over client URL for API calls."""
        url = self.server_url or self.client_url
        return url.rstrip("/") if url else None


class GenericCheck(Document):
    """Benchmark template applied to every matching generated dashboard."""

    profile: str
    dashboard_uid: str
    check_id: Any = None
    panel: Dict[str, Any] = Field(default_factory=dict)
    add_for_workloads_matching_regex: Optional[str] = None
    name: Optional[str] = None


class GenericDeepLink(Document):
    """Deep link template applied to every matching test run."""

    profile: str
    name: str = ""
    url: str = ""
    grafana: Optional[str] = None


class GenericReportPanel(Document):
    """Report panel template applied to every matching generated dashboard."""

    profile: str
    dashboard_uid: str
    report_panel_id: Any = None
    panel: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None


class Benchmark(Document):
    """Check bound to one panel of a generated dashboard."""

    application: str
    test_environment: str
    test_type: str
    grafana: str
    dashboard_label: str
    dashboard_id: Optional[int] = None
    dashboard_uid: str
    panel: Dict[str, Any] = Field(default_factory=dict)
    generic_check_id: Any = None


class DeepLink(Document):
    """Link shown on test runs of an application and environment."""

    application: str
    test_environment: str
    test_type: str
    name: str = ""
    url: str = ""
    generic_deep_link_id: Any = None


class ReportPanel(Document):
    """Panel included in test run reports."""

    application: str
    test_environment: str
    test_type: str
    grafana: str
    dashboard_label: str
    dashboard_id: Optional[int] = None
    dashboard_uid: str
    panel: Dict[str, Any] = Field(default_factory=dict)
    index: int = 1
    generic_report_panel_id: Any = None


class Datasource(BaseModel):
    """Subset of a Grafana datasource record used for variable queries."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    uid: Optional[str] = None
    name: Optional[str] = None
    type: str = ""
    database: Optional[str] = None
    json_data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def database_name(self) -> Optional[str]:
        """Database for InfluxQL queries (newer Grafana keeps it in jsonData)."""
        return self.database or self.json_data.get("dbName")
