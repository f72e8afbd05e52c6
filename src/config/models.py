"""Config models and loader.

Runtime settings come from the environment (and an optional ``.env`` file)
using the variable names the Perfana deployment already sets: ``MONGO_URL``,
``PG_HOST``, ``SYNC_INTERVAL`` and friends. A JSON file can additionally seed
Grafana instance records at startup. JSON parsing prefers `orjson` when
available and falls back to the standard library's `json` module.
"""

from __future__ import annotations

import json as _json
import re
from pathlib import Path
from typing import Any, Callable, List, Optional

try:
    import orjson as _orjson_mod  # type: ignore[assignment]
except ImportError:  # pragma: no cover - optional dependency
    _orjson_mod = None  # type: ignore[assignment]
    _loads_orjson: Optional[Callable[[bytes], Any]] = None
else:

    def _loads_orjson(buf: bytes) -> Any:
        loader = getattr(_orjson_mod, "loads")  # type: ignore[assignment]
        return loader(buf)


from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class GrafanaInstanceConfig(BaseModel):
    """Grafana instance to register in the ``grafanas`` collection.

    Attributes
    ----------
    label: str
        Logical instance label referenced by bindings and mirror records.
    server_url: Optional[str]
        URL reachable from this service (preferred for API calls).
    client_url: Optional[str]
        URL used by browsers; also used for API calls without ``server_url``.
    api_key: Optional[str]
        Service account token sent as a bearer credential.
    """

    model_config = ConfigDict(populate_by_name=True)

    label: str
    server_url: Optional[str] = Field(None, alias="serverUrl")
    client_url: Optional[str] = Field(None, alias="clientUrl")
    api_key: Optional[str] = Field(None, alias="apiKey")


class AppConfig(BaseModel):
    """Optional file-based configuration.

    Attributes
    ----------
    grafanas: List[GrafanaInstanceConfig]
        Grafana instances upserted (by label) into the metadata store at
        startup.
    """

    grafanas: List[GrafanaInstanceConfig] = Field(default_factory=list)

    @staticmethod
    def load(path: Path) -> "AppConfig":
        """Load application config from a JSON file."""
        raw = path.read_bytes()
        if _loads_orjson is not None:
            data = _loads_orjson(raw)
        else:
            data = _json.loads(raw.decode("utf-8"))
        return AppConfig.model_validate(data)


class SyncSettings(BaseSettings):
    """Environment-driven settings and .env support.

    Attributes
    ----------
    log_level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".
    mongo_url: str
        MongoDB connection string for the Perfana database.
    mongo_database: Optional[str]
        Database name; defaults to the database in ``mongo_url``.
    pg_host, pg_port, pg_user, pg_password, pg_database, pg_schema, pg_ssl
        Connection to Grafana's PostgreSQL database (read-only use).
    mysql_host, mysql_port, mysql_user, mysql_password, mysql_database
        Connection to Grafana's MySQL database; preferred over PostgreSQL
        when host, user and password are all set.
    sync_interval: int
        Delay between sync ticks in milliseconds. Defaults to 30000.
    propagate_template_updates: bool
        Push template edits onto generated instances. Defaults to False.
    prometheus_variables_query_time_range_days: int
        Look-back window for Prometheus series queries. Defaults to 1.
    parallel_get_dashboard_calls: int
        Batch size for dashboard detail fetches in the update phase.
    auto_config_lookback_minutes: int
        Test runs that ended within this window are auto-configured.
    grafana_timeout_seconds: int
        HTTP timeout for Grafana API calls.
    sync_http_token: Optional[str]
        Bearer token protecting the HTTP trigger endpoint.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", extra="ignore"
    )

    log_level: str = Field("INFO")

    mongo_url: str = Field("mongodb://localhost:27017/perfana")
    mongo_database: Optional[str] = None

    pg_host: Optional[str] = None
    pg_port: int = Field(5432, ge=1, le=65535)
    pg_user: Optional[str] = None
    pg_password: Optional[str] = None
    pg_database: str = Field("grafana")
    pg_schema: str = Field("public")
    pg_ssl: bool = False

    mysql_host: Optional[str] = None
    mysql_port: int = Field(3306, ge=1, le=65535)
    mysql_user: Optional[str] = None
    mysql_password: Optional[str] = None
    mysql_database: str = Field("grafana")

    sync_interval: int = Field(
        30_000, ge=100, description="Delay between sync ticks in milliseconds"
    )
    propagate_template_updates: bool = False
    prometheus_variables_query_time_range_days: int = Field(1, ge=1)
    parallel_get_dashboard_calls: int = Field(20, ge=1)
    auto_config_lookback_minutes: int = Field(5, ge=1)
    grafana_timeout_seconds: int = Field(30, ge=1)
    grafana_max_retries: int = Field(1, ge=0)

    sync_http_token: Optional[str] = None

    @field_validator("pg_schema")
    @classmethod
    def _schema_is_identifier(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"PG_SCHEMA must be a plain SQL identifier: {value!r}")
        return value

    @property
    def sync_interval_seconds(self) -> float:
        return self.sync_interval / 1000.0

    @property
    def mysql_configured(self) -> bool:
        return bool(self.mysql_host and self.mysql_user and self.mysql_password)

    @property
    def postgres_configured(self) -> bool:
        return bool(self.pg_host and self.pg_user and self.pg_password)

    @property
    def grafana_database_configured(self) -> bool:
        """True when all settings needed to reach a Grafana database are set."""
        return self.mysql_configured or self.postgres_configured
