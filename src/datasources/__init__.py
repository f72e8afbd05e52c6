"""Time-series backends used to resolve templating variable values.

Every backend implements :class:`VariableBackend` and is registered under the
Grafana datasource ``type`` it serves. The resolver looks the backend up by
type; adding a backend means adding a module and registering it here.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Pattern, Protocol

from ..adapters.grafana import GrafanaClient
from ..domain.matching import compile_or_none, strip_regex_delimiters
from ..domain.models import Datasource, TemplatingVariable

logger = logging.getLogger(__name__)


class VariableBackend(Protocol):
    """Protocol for variable value fetchers."""

    async def resolve_variable_values(
        self, query: str, variable: TemplatingVariable
    ) -> List[str]:
        """Return distinct values, in discovery order, for ``query``.

        Raises
        ------
        BackendQueryError
            When the backend call fails or returns an unusable payload.
        """
        raise NotImplementedError


BackendFactory = Callable[[GrafanaClient, Datasource, "BackendOptions"], VariableBackend]


class BackendOptions:
    """Tunables shared by all backends.

    Attributes
    ----------
    prometheus_range_days: int
        Look-back window for Prometheus series queries.
    """

    def __init__(self, prometheus_range_days: int = 1) -> None:
        self.prometheus_range_days = prometheus_range_days


_backends: Dict[str, BackendFactory] = {}


def register_backend(datasource_type: str, factory: BackendFactory) -> None:
    """Register a backend factory under a datasource ``type`` tag."""
    _backends[datasource_type] = factory


def get_backend(
    client: GrafanaClient, datasource: Datasource, options: BackendOptions
) -> Optional[VariableBackend]:
    """Build the backend for ``datasource``; None when its type is unsupported."""
    factory = _backends.get(datasource.type)
    if factory is None:
        return None
    return factory(client, datasource, options)


def get_supported_types() -> List[str]:
    """Datasource types with a registered backend."""
    return list(_backends.keys())


def add_unique(values: List[str], value: object) -> None:
    """Append ``value`` (as text) unless already present."""
    text = value if isinstance(value, str) else str(value)
    if text not in values:
        values.append(text)


def variable_regex(variable: TemplatingVariable) -> Optional[Pattern[str]]:
    """The variable's own value regex, or None when unset or invalid.

    Grafana stores it as ``/pattern/``. An invalid pattern disables filtering
    for that variable instead of failing the lookup.
    """
    pattern = strip_regex_delimiters(variable.regex)
    if not pattern:
        return None
    return compile_or_none(pattern, context=f"variable:{variable.name}")


def _register_builtin_backends() -> None:
    from .graphite import GraphiteBackend
    from .influxdb import InfluxDbBackend
    from .prometheus import PrometheusBackend

    register_backend("influxdb", InfluxDbBackend)
    register_backend("prometheus", PrometheusBackend)
    register_backend("graphite", GraphiteBackend)


_register_builtin_backends()
