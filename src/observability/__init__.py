"""Observability utilities: logging setup.

This module configures standard logging and, if available, integrates
`structlog` for structured logs. The dependency on `structlog` is optional to
keep the base runtime lightweight.
"""

from __future__ import annotations

import importlib
import logging

from ..utils.correlation import get_tick_id


class TickIdFilter(logging.Filter):
    """Attach the current sync tick id to every log record as ``tick_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "tick_id", None):
            record.tick_id = get_tick_id() or "-"
        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging.

    Parameters
    ----------
    level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".

    Behavior
    --------
    - Initializes Python's logging with the requested level and a format that
      carries the sync tick id.
    - Keeps chatty client libraries (httpx, pymongo, asyncpg) at WARNING
      unless DEBUG was requested.
    - If `structlog` is installed, configures it with a filtering bound logger.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=("%(asctime)s %(levelname)s %(name)s [%(tick_id)s] - %(message)s"),
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, TickIdFilter) for f in handler.filters):
            handler.addFilter(TickIdFilter())

    library_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for logger_name in ("httpx", "httpcore", "pymongo", "asyncpg"):
        logging.getLogger(logger_name).setLevel(library_level)

    try:  # optional structlog
        structlog = importlib.import_module("structlog")
        structlog.configure(
            wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        )
    except ModuleNotFoundError:  # pragma: no cover
        pass
