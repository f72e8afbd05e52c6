"""Tests for environment settings and the Grafana seed file."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from src.config.models import AppConfig, SyncSettings
from src.server.app import seed_grafana_instances


def test_defaults(monkeypatch):
    for name in (
        "MONGO_URL",
        "SYNC_INTERVAL",
        "PG_HOST",
        "MYSQL_HOST",
        "PROPAGATE_TEMPLATE_UPDATES",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = SyncSettings(_env_file=None)

    assert settings.sync_interval == 30_000
    assert settings.sync_interval_seconds == 30.0
    assert settings.propagate_template_updates is False
    assert settings.parallel_get_dashboard_calls == 20
    assert settings.grafana_database_configured is False


def test_settings_from_environment(monkeypatch):
    """Deployment variable names map onto settings."""
    monkeypatch.setenv("MONGO_URL", "mongodb://mongo:27017/perfana")
    monkeypatch.setenv("SYNC_INTERVAL", "5000")
    monkeypatch.setenv("PROPAGATE_TEMPLATE_UPDATES", "true")
    monkeypatch.setenv("PG_HOST", "pg")
    monkeypatch.setenv("PG_USER", "grafana")
    monkeypatch.setenv("PG_PASSWORD", "secret")
    monkeypatch.setenv("PG_SCHEMA", "grafana_v10")

    settings = SyncSettings(_env_file=None)

    assert settings.mongo_url == "mongodb://mongo:27017/perfana"
    assert settings.sync_interval_seconds == 5.0
    assert settings.propagate_template_updates is True
    assert settings.pg_schema == "grafana_v10"
    assert settings.grafana_database_configured is True


@pytest.mark.parametrize("schema", ["public; drop table dashboard", "1abc", "a-b"])
def test_schema_must_be_identifier(monkeypatch, schema):
    """The schema is interpolated into SQL, so only identifiers are accepted."""
    monkeypatch.setenv("PG_SCHEMA", schema)
    with pytest.raises(ValidationError):
        SyncSettings(_env_file=None)


def test_sync_interval_lower_bound(monkeypatch):
    monkeypatch.setenv("SYNC_INTERVAL", "10")
    with pytest.raises(ValidationError):
        SyncSettings(_env_file=None)


def test_app_config_load_accepts_camel_case(tmp_path: Path):
    """The seed file uses the stored field names."""
    cfg_path = tmp_path / "grafanas.json"
    cfg = {
        "grafanas": [
            {"label": "default", "serverUrl": "http://grafana:3000", "apiKey": "k"},
            {"label": "public", "clientUrl": "https://grafana.example"},
        ]
    }
    cfg_path.write_text(json.dumps(cfg), encoding="utf-8")

    config = AppConfig.load(cfg_path)

    assert [g.label for g in config.grafanas] == ["default", "public"]
    assert config.grafanas[0].server_url == "http://grafana:3000"
    assert config.grafanas[0].api_key == "k"
    assert config.grafanas[1].server_url is None


def test_app_config_load_rejects_missing_label(tmp_path: Path):
    cfg_path = tmp_path / "grafanas.json"
    cfg_path.write_text(json.dumps({"grafanas": [{"serverUrl": "http://x"}]}), encoding="utf-8")
    with pytest.raises(ValidationError):
        AppConfig.load(cfg_path)


@pytest.mark.asyncio
async def test_seeding_upserts_by_label(context, store):
    """Seeding twice refreshes the record instead of duplicating it."""
    config = AppConfig.model_validate(
        {"grafanas": [{"label": "default", "serverUrl": "http://new.test", "apiKey": "k2"}]}
    )

    assert await seed_grafana_instances(context, config) == 1
    assert await seed_grafana_instances(context, config) == 1

    grafanas = store.docs("grafanas")
    assert len(grafanas) == 1
    assert grafanas[0]["serverUrl"] == "http://new.test"
    assert grafanas[0]["apiKey"] == "k2"
