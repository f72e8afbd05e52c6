"""Shared runtime context handed to every engine component.

The context is built once at startup and owns the store connections and one
:class:`GrafanaClient` per Grafana instance label. Components receive it
explicitly rather than reaching for module-level connections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..config.models import SyncSettings
from ..domain.models import GrafanaInstance
from . import DocumentStore, GrafanaDatabase
from .grafana import GrafanaClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[GrafanaInstance, SyncSettings], GrafanaClient]


def default_client_factory(
    instance: GrafanaInstance, settings: SyncSettings
) -> GrafanaClient:
    return GrafanaClient(
        instance,
        timeout=settings.grafana_timeout_seconds,
        max_retries=settings.grafana_max_retries,
    )


@dataclass
class SyncContext:
    """Connections and settings shared by the sync phases and auto-config.

    Attributes
    ----------
    store: DocumentStore
        Perfana metadata store.
    grafana_db: Optional[GrafanaDatabase]
        Grafana database; mirror sync is skipped without it.
    settings: SyncSettings
        Runtime settings.
    client_factory: ClientFactory
        Builds a Grafana API client for an instance record.
    """

    store: DocumentStore
    grafana_db: Optional[GrafanaDatabase]
    settings: SyncSettings
    client_factory: ClientFactory = default_client_factory
    _clients: Dict[str, GrafanaClient] = field(default_factory=dict)

    def grafana_client(self, instance: GrafanaInstance) -> GrafanaClient:
        """Return the cached client for ``instance.label`` (created on first use)."""
        client = self._clients.get(instance.label)
        if client is None:
            client = self.client_factory(instance, self.settings)
            self._clients[instance.label] = client
        return client

    async def aclose(self) -> None:
        for label, client in list(self._clients.items()):
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - best effort at shutdown
                logger.debug(
                    "context.client.close_failed",
                    extra={"grafana": label, "error": str(exc)},
                )
        self._clients.clear()
