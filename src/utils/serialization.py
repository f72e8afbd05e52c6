"""JSON helpers for stored Grafana documents.

Mirror records keep the full Grafana API response as a JSON string
(``grafanaJson``). Encoding prefers ``orjson`` when it is installed and falls
back to the standard library ``json`` module otherwise.
"""

from __future__ import annotations

import json as _json
from typing import Any, Union

try:
    import orjson as _orjson_mod  # type: ignore[assignment]
except ImportError:  # pragma: no cover - optional dependency
    _orjson_mod = None  # type: ignore[assignment]


def loads(raw: Union[str, bytes]) -> Any:
    """Parse a JSON document from text or bytes."""
    if _orjson_mod is not None:
        return _orjson_mod.loads(raw)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return _json.loads(raw)


def dumps(value: Any) -> str:
    """Serialize ``value`` to compact JSON text."""
    if _orjson_mod is not None:
        return _orjson_mod.dumps(value, default=str).decode("utf-8")
    return _json.dumps(value, separators=(",", ":"), default=str)
