"""Tests for sync ticks and the periodic service loop."""

from __future__ import annotations

import asyncio

import pytest

from src.adapters.context import SyncContext
from src.server.app import SyncService
from src.sync.runner import SyncRunner


class _BrokenGrafanaDatabase:
    """Grafana database whose lifecycle queries always fail."""

    async def created_or_template_uids(self, since):
        raise ConnectionError("database down")

    async def updated_uids(self, since):
        return []

    async def live_dashboard_uids(self):
        return []

    async def template_dashboard_uids(self):
        return []


class _CountingRunner:
    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    async def run_tick(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("tick exploded")
        return {"grafanas": {}, "autoconfig": {}}


@pytest.mark.asyncio
async def test_tick_runs_mirror_phases_then_autoconfig(context, grafana, grafana_db, store):
    """Each instance reports its phases; auto-config reports its counters."""
    grafana.add_dashboard("d1", "Shop JVM", tags=["perfana"])
    grafana_db.created = ["d1"]

    summary = await SyncRunner(context).run_tick()

    phases = summary["grafanas"]["default"]
    assert set(phases) == {"add", "update", "restore"}
    assert phases["add"] == {"succeeded": 1, "failed": 0, "failures": []}
    assert summary["autoconfig"]["test_runs"] == 0
    assert [d["uid"] for d in store.docs("grafanaDashboards")] == ["d1"]


@pytest.mark.asyncio
async def test_template_phase_only_when_enabled(context, settings):
    """Template propagation is opt-in."""
    context.settings = settings.model_copy(update={"propagate_template_updates": True})

    summary = await SyncRunner(context).run_tick()

    assert "templates" in summary["grafanas"]["default"]


@pytest.mark.asyncio
async def test_failing_phase_does_not_stop_later_phases(store, grafana, settings):
    """A phase error is reported and the remaining phases still run."""
    context = SyncContext(
        store=store,
        grafana_db=_BrokenGrafanaDatabase(),
        settings=settings,
        client_factory=lambda instance, _s: grafana.client(instance),
    )

    phases = (await SyncRunner(context).run_tick())["grafanas"]["default"]

    assert phases["add"] == {"error": "database down"}
    assert phases["update"]["failed"] == 0
    assert phases["restore"]["failed"] == 0


@pytest.mark.asyncio
async def test_misconfigured_instance_does_not_affect_others(context, store):
    """An instance without a URL fails on its own."""
    store.seed("grafanas", {"label": "broken"})

    summary = await SyncRunner(context).run_tick()

    assert "error" in summary["grafanas"]["broken"]
    assert "add" in summary["grafanas"]["default"]


@pytest.mark.asyncio
async def test_mirror_sync_skipped_without_grafana_database(store, grafana, settings):
    """Without the Grafana database only auto-config runs."""
    context = SyncContext(
        store=store,
        grafana_db=None,
        settings=settings,
        client_factory=lambda instance, _s: grafana.client(instance),
    )

    summary = await SyncRunner(context).run_tick()

    assert summary["grafanas"] == {"default": {}}
    assert grafana.requests == []


@pytest.mark.asyncio
async def test_run_once_records_status(context):
    """Every tick gets an id, a duration and a status."""
    runner = _CountingRunner()
    service = SyncService(context, runner=runner)

    status = await service.run_once()

    assert status["status"] == "ok"
    assert status["tick_id"]
    assert status["duration_ms"] >= 0
    assert service.ticks == 1
    assert service.last_tick is status


@pytest.mark.asyncio
async def test_failing_tick_is_reported_not_raised(context):
    """A tick that raises is logged and reported as an error."""
    service = SyncService(context, runner=_CountingRunner(fail=True))

    status = await service.run_once()

    assert status["status"] == "error"
    assert status["error"] == "tick exploded"


@pytest.mark.asyncio
async def test_loop_start_and_stop(context, settings):
    """The loop ticks immediately and stops cleanly; start and stop are idempotent."""
    runner = _CountingRunner()
    service = SyncService(context, runner=runner)

    await service.start()
    await service.start()
    await asyncio.sleep(0.05)
    assert service.running
    await service.stop()
    await service.stop()

    assert not service.running
    assert runner.calls >= 1


@pytest.mark.asyncio
async def test_concurrent_ticks_do_not_overlap(context):
    """A tick requested while another runs waits for it."""
    active = 0
    peak = 0

    class _SlowRunner:
        async def run_tick(self):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return {}

    service = SyncService(context, runner=_SlowRunner())
    await asyncio.gather(service.run_once(), service.run_once())

    assert peak == 1
    assert service.ticks == 2
