"""
Timestamp parsing and normalization utilities.

Grafana reports ``meta.updated`` as ISO8601 strings, MongoDB hands back
datetimes that may or may not carry a timezone depending on client options,
and the Grafana database stores naive UTC timestamps. Everything in this
package compares timestamps as timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[Union[str, datetime, int, float]]) -> Optional[datetime]:
    """
    Parse a timestamp from the formats seen in Grafana and Mongo payloads.

    Supports:
    - ``datetime`` instances (naive values are treated as UTC)
    - ISO8601 strings, with or without a trailing ``Z``
    - Unix timestamps in seconds or milliseconds

    Parameters
    ----------
    value : str, datetime, int, float, or None
        The timestamp to parse

    Returns
    -------
    datetime or None
        Aware UTC datetime, or None if the value cannot be parsed

    Examples
    --------
    >>> parse_timestamp("2025-10-15T12:00:00Z")
    datetime.datetime(2025, 10, 15, 12, 0, tzinfo=datetime.timezone.utc)
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        if not value:
            return None
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            logger.debug("timestamps.parse.invalid", extra={"value": value})
            return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value >= 10_000_000_000 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return None


def naive_utc(value: datetime) -> datetime:
    """Return ``value`` as a naive UTC datetime (Grafana database columns)."""
    return ensure_utc(value).replace(tzinfo=None)


def minutes_ago(minutes: float, now: Optional[datetime] = None) -> datetime:
    """Return the aware UTC instant ``minutes`` before ``now``."""
    return (now or utc_now()) - timedelta(minutes=minutes)
