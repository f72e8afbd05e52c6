"""Sync service runtime.

:class:`SyncService` owns the :class:`SyncContext` and runs sync ticks on a
fixed delay. Every tick gets its own correlation id; a failing tick is
logged and the next one is scheduled regardless. Ticks never overlap: a tick
triggered over HTTP waits for a running one to finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import psutil

from ..adapters.context import SyncContext
from ..adapters.grafana_db import grafana_database_from_settings
from ..adapters.mongo import MongoDocumentStore
from ..autoconfig.updates import MetadataUpdates
from ..config.models import AppConfig, SyncSettings
from ..sync.runner import SyncRunner
from ..utils.correlation import new_tick_id, set_tick_id
from ..utils.timestamps import utc_now

logger = logging.getLogger(__name__)


def log_process_memory(event: str = "service.startup.memory") -> None:
    """Log resident and virtual memory of the current process."""
    try:
        mem_info = psutil.Process().memory_info()
        logger.info(
            event,
            extra={
                "rss_mb": round(mem_info.rss / 1024 / 1024, 1),
                "vms_mb": round(mem_info.vms / 1024 / 1024, 1),
            },
        )
    except (psutil.Error, RuntimeError):  # pragma: no cover
        pass


async def open_context(settings: SyncSettings) -> SyncContext:
    """Connect to the metadata store and (when configured) the Grafana database.

    Raises
    ------
    Exception
        Whatever the drivers raise when a connection cannot be established.
        Callers treat this as fatal at startup.
    """
    store = MongoDocumentStore(settings.mongo_url, settings.mongo_database)
    await store.ping()
    logger.info("service.startup.mongo_connected", extra={"database": store.database_name})

    grafana_db = grafana_database_from_settings(settings)
    if grafana_db is not None:
        await grafana_db.connect()
        logger.info(
            "service.startup.grafana_db_connected",
            extra={"backend": type(grafana_db).__name__},
        )
    else:
        logger.warning("service.startup.grafana_db_not_configured")
    return SyncContext(store=store, grafana_db=grafana_db, settings=settings)


async def close_context(context: SyncContext) -> None:
    await context.aclose()
    if context.grafana_db is not None and hasattr(context.grafana_db, "close"):
        await context.grafana_db.close()
    if hasattr(context.store, "close"):
        await context.store.close()


async def seed_grafana_instances(context: SyncContext, config: AppConfig) -> int:
    """Upsert Grafana instances from the config file into ``grafanas``."""
    updates = MetadataUpdates(context.store)
    for instance in config.grafanas:
        await updates.upsert_grafana_instance(instance)
        logger.info("service.startup.grafana_registered", extra={"grafana": instance.label})
    return len(config.grafanas)


class SyncService:
    """Periodic sync loop around a :class:`SyncRunner`.

    Parameters
    ----------
    context: SyncContext
        Shared connections and settings.
    runner: Optional[SyncRunner]
        Tick implementation; built from ``context`` when omitted.
    """

    def __init__(self, context: SyncContext, runner: Optional[SyncRunner] = None) -> None:
        self.context = context
        self.runner = runner or SyncRunner(context)
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional["asyncio.Task[None]"] = None
        self.ticks: int = 0
        self.last_tick: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, Any]:
        """Run a single tick and return its status record."""
        async with self._tick_lock:
            tick_id = new_tick_id()
            set_tick_id(tick_id)
            started = utc_now()
            start_time = time.monotonic()
            logger.info("sync.tick.start")
            status: Dict[str, Any] = {"tick_id": tick_id, "started": started.isoformat()}
            try:
                status["summary"] = await self.runner.run_tick()
                status["status"] = "ok"
            except Exception as exc:
                status["status"] = "error"
                status["error"] = str(exc)
                logger.error(
                    "sync.tick.failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )
            status["duration_ms"] = int((time.monotonic() - start_time) * 1000)
            self.ticks += 1
            self.last_tick = status
            logger.info(
                "sync.tick.complete",
                extra={"status": status["status"], "duration_ms": status["duration_ms"]},
            )
            return status

    async def _loop(self) -> None:
        interval = self.context.settings.sync_interval_seconds
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def start(self) -> None:
        """Start the periodic loop. Idempotent."""
        if self.running:
            logger.debug("service.start no-op: already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "service.started",
            extra={"sync_interval_ms": self.context.settings.sync_interval},
        )

    async def stop(self) -> None:
        """Stop the loop after the current tick. Idempotent."""
        if not self.running:
            logger.debug("service.stop no-op: not running")
            return
        self._stop_event.set()
        assert self._task is not None
        await self._task
        self._task = None
        logger.info("service.stopped")

    async def wait(self) -> None:
        """Block until the loop ends."""
        if self._task is not None:
            await self._task
