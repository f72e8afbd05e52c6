"""Store interfaces consumed by the sync and auto-configuration engine.

The engine depends on two capabilities only:

- a keyed document store (Perfana's MongoDB) addressed by logical collection
  name with Mongo-style filters and update operators;
- read-only lifecycle queries against the Grafana database.

Concrete implementations live in :mod:`src.adapters.mongo` and
:mod:`src.adapters.grafana_db`; tests provide in-memory versions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol


class DocumentStore(Protocol):
    """Protocol for the Perfana metadata store.

    Filters and updates follow MongoDB semantics (``$in``, ``$gte``,
    ``$and``, ``$set``, ``$addToSet``).
    """

    async def find(
        self, collection: str, query: Mapping[str, Any]
    ) -> List[Dict[str, Any]]:
        """Return all documents matching ``query``."""
        raise NotImplementedError

    async def find_one(
        self, collection: str, query: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Return the first document matching ``query`` or None."""
        raise NotImplementedError

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> Any:
        """Insert ``document`` and return its id."""
        raise NotImplementedError

    async def update_one(
        self, collection: str, query: Mapping[str, Any], update: Mapping[str, Any]
    ) -> int:
        """Apply ``update`` to the first match; return the modified count."""
        raise NotImplementedError

    async def update_many(
        self, collection: str, query: Mapping[str, Any], update: Mapping[str, Any]
    ) -> int:
        """Apply ``update`` to every match; return the modified count."""
        raise NotImplementedError

    async def find_one_and_update(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Apply ``update`` to one match (inserting when ``upsert``); return it."""
        raise NotImplementedError

    async def delete_one(self, collection: str, query: Mapping[str, Any]) -> int:
        """Delete the first match; return the deleted count."""
        raise NotImplementedError

    async def delete_many(self, collection: str, query: Mapping[str, Any]) -> int:
        """Delete every match; return the deleted count."""
        raise NotImplementedError


class GrafanaDatabase(Protocol):
    """Read-only lifecycle queries against Grafana's ``dashboard`` tables."""

    async def created_or_template_uids(self, since: datetime) -> List[str]:
        """Uids of dashboards created after ``since`` or tagged as templates."""
        raise NotImplementedError

    async def updated_uids(self, since: datetime) -> List[str]:
        """Uids of dashboards updated after ``since``."""
        raise NotImplementedError

    async def live_dashboard_uids(self) -> List[str]:
        """Uids of every dashboard (folders excluded) currently stored."""
        raise NotImplementedError

    async def template_dashboard_uids(self) -> List[str]:
        """Uids of dashboards tagged ``perfana-template``."""
        raise NotImplementedError
