"""Command-line interface to run the Perfana Grafana sync service.

The CLI connects to the metadata store (and the Grafana database when
configured), optionally seeds Grafana instances from a JSON config file and
runs the periodic sync loop in the foreground. ``--once`` runs a single tick
and exits; ``--http`` serves the HTTP surface next to the loop.

Usage
-----
    python -m src.server.cli
    python -m src.server.cli --config grafanas.json --once
    python -m src.server.cli --http --port 8080
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from ..config.models import AppConfig, SyncSettings
from ..observability import setup_logging
from .app import (
    SyncService,
    close_context,
    log_process_memory,
    open_context,
    seed_grafana_instances,
)
from .http import create_app

logger = logging.getLogger(__name__)

EXIT_STARTUP_FAILURE = 1


async def _run(settings: SyncSettings, config_path: Optional[Path], once: bool) -> int:
    """Open connections, run the loop (or one tick) and close everything.

    Returns the process exit code.
    """
    log_process_memory()
    try:
        context = await open_context(settings)
    except Exception as exc:
        logger.error(
            "service.startup.connection_failed",
            extra={"error": str(exc), "error_type": type(exc).__name__},
            exc_info=True,
        )
        return EXIT_STARTUP_FAILURE

    service = SyncService(context)
    try:
        if config_path is not None:
            await seed_grafana_instances(context, AppConfig.load(config_path))
        if once:
            status = await service.run_once()
            return 0 if status["status"] == "ok" else 1
        await service.start()
        try:
            await service.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        finally:
            await service.stop()
        return 0
    finally:
        await close_context(context)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Perfana Grafana sync service")
    parser.add_argument("--config", help="Path to JSON config seeding Grafana instances")
    parser.add_argument(
        "--once", action="store_true", help="Run a single sync tick and exit"
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
        ],
        help="Logging level (overrides environment)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (once sets DEBUG)",
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Serve the HTTP surface next to the sync loop (requires fastapi/uvicorn)",
    )
    parser.add_argument(
        "--host", default="127.0.0.1", help="HTTP bind host (default 127.0.0.1)"
    )
    parser.add_argument("--port", type=int, default=8080, help="HTTP port")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entrypoint for the sync service."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = SyncSettings()
    # Determine effective log level
    effective_level = args.log_level or (
        "DEBUG" if args.verbose > 0 else settings.log_level.upper()
    )
    # Apply early so subsequent imports use configured level
    setup_logging(effective_level)
    config_path = Path(args.config) if args.config else None

    if args.http:
        if args.once:
            parser.error("--once cannot be combined with --http")
        # Lazy import uvicorn only for HTTP mode
        import importlib

        uvicorn = importlib.import_module("uvicorn")
        app = create_app(settings=settings, config_path=config_path)
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level=effective_level.lower(),
        )
        return

    sys.exit(asyncio.run(_run(settings, config_path, args.once)))


if __name__ == "__main__":
    main()
