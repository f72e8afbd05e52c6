"""MongoDB implementation of :class:`DocumentStore`.

Uses pymongo's native asyncio client. Datetimes come back timezone-aware
(``tz_aware=True``) so they compare directly with Grafana timestamps.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from pymongo import AsyncMongoClient, ReturnDocument

logger = logging.getLogger(__name__)


class MongoDocumentStore:
    """Document store backed by the Perfana MongoDB database.

    Parameters
    ----------
    url: str
        MongoDB connection string (``MONGO_URL``).
    database: Optional[str]
        Database name; defaults to the database named in ``url``.
    """

    def __init__(self, url: str, database: Optional[str] = None) -> None:
        self._client: AsyncMongoClient = AsyncMongoClient(url, tz_aware=True)
        if database:
            self._db = self._client[database]
        else:
            self._db = self._client.get_default_database()
        logger.info("mongo.store.init", extra={"database": self._db.name})

    @property
    def database_name(self) -> str:
        return self._db.name

    async def ping(self) -> None:
        """Round-trip to the server; raises when it cannot be reached."""
        await self._client.admin.command("ping")

    async def close(self) -> None:
        await self._client.close()

    async def find(
        self, collection: str, query: Mapping[str, Any]
    ) -> List[Dict[str, Any]]:
        cursor = self._db[collection].find(dict(query))
        return await cursor.to_list(length=None)

    async def find_one(
        self, collection: str, query: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return await self._db[collection].find_one(dict(query))

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> Any:
        result = await self._db[collection].insert_one(dict(document))
        return result.inserted_id

    async def update_one(
        self, collection: str, query: Mapping[str, Any], update: Mapping[str, Any]
    ) -> int:
        result = await self._db[collection].update_one(dict(query), dict(update))
        return result.modified_count

    async def update_many(
        self, collection: str, query: Mapping[str, Any], update: Mapping[str, Any]
    ) -> int:
        result = await self._db[collection].update_many(dict(query), dict(update))
        return result.modified_count

    async def find_one_and_update(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> Optional[Dict[str, Any]]:
        return await self._db[collection].find_one_and_update(
            dict(query),
            dict(update),
            upsert=upsert,
            return_document=ReturnDocument.AFTER,
        )

    async def delete_one(self, collection: str, query: Mapping[str, Any]) -> int:
        result = await self._db[collection].delete_one(dict(query))
        return result.deleted_count

    async def delete_many(self, collection: str, query: Mapping[str, Any]) -> int:
        result = await self._db[collection].delete_many(dict(query))
        return result.deleted_count
