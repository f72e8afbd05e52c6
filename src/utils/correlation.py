"""Correlation ID utilities for structured logging.

Each sync tick (and each HTTP-triggered run) gets an identifier stored in a
ContextVar, so that tasks spawned during the tick can include the same
``tick_id`` in their log records without passing it around explicitly.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar

_tick_id_var: ContextVar[str] = ContextVar("tick_id", default="")


def new_tick_id() -> str:
    """Generate a short random tick identifier."""

    return uuid.uuid4().hex[:12]


def set_tick_id(tick_id: str) -> None:
    """Set the current tick correlation id in a context variable."""

    _tick_id_var.set(tick_id)


def get_tick_id() -> str:
    """Return the current tick correlation id, or empty string."""

    return _tick_id_var.get()
