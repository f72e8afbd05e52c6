"""Read-only access to Grafana's own database (PostgreSQL or MySQL).

Dashboard lifecycle events (created, updated, deleted) are detected from the
``dashboard`` and ``dashboard_tag`` tables rather than the HTTP API, which has
no cheap "changed since" query. Timestamp columns are naive UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

import aiomysql
import asyncpg

from ..domain.models import TEMPLATE_TAG
from ..utils.timestamps import naive_utc

logger = logging.getLogger(__name__)


class PostgresGrafanaDatabase:
    """Lifecycle queries over an asyncpg connection pool.

    Parameters
    ----------
    host, port, user, password, database:
        Connection parameters (``PG_*`` settings).
    schema: str
        Schema holding the Grafana tables; must be a plain identifier.
    ssl: bool
        Require TLS for the connection.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str = "grafana",
        schema: str = "public",
        ssl: bool = False,
    ) -> None:
        self._dsn_kwargs = {
            "host": host,
            "port": port,
            "user": user,
            "password": password,
            "database": database,
            "ssl": "require" if ssl else None,
        }
        self._schema = schema
        self._pool: Optional[Any] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "PostgresGrafanaDatabase":
        return cls(
            host=settings.pg_host,
            port=settings.pg_port,
            user=settings.pg_user,
            password=settings.pg_password,
            database=settings.pg_database,
            schema=settings.pg_schema,
            ssl=settings.pg_ssl,
        )

    async def connect(self) -> None:
        """Create the pool; raises when the database cannot be reached."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(min_size=1, max_size=4, **self._dsn_kwargs)
            logger.info(
                "grafana_db.connected",
                extra={"host": self._dsn_kwargs["host"], "schema": self._schema},
            )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _uids(self, sql: str, *args: Any) -> List[str]:
        if self._pool is None:
            await self.connect()
        rows = await self._pool.fetch(sql, *args)
        return [row["uid"] for row in rows]

    async def created_or_template_uids(self, since: datetime) -> List[str]:
        sql = (
            f"SELECT DISTINCT d.uid FROM {self._schema}.dashboard d "
            f"LEFT OUTER JOIN {self._schema}.dashboard_tag t ON d.id = t.dashboard_id "
            "WHERE t.term ILIKE $1 OR d.created > $2"
        )
        return await self._uids(sql, f"%{TEMPLATE_TAG}%", naive_utc(since))

    async def updated_uids(self, since: datetime) -> List[str]:
        sql = f"SELECT uid FROM {self._schema}.dashboard WHERE updated > $1"
        return await self._uids(sql, naive_utc(since))

    async def live_dashboard_uids(self) -> List[str]:
        sql = f"SELECT uid FROM {self._schema}.dashboard WHERE is_folder = false"
        return await self._uids(sql)

    async def template_dashboard_uids(self) -> List[str]:
        sql = (
            f"SELECT DISTINCT d.uid FROM {self._schema}.dashboard d "
            f"JOIN {self._schema}.dashboard_tag t ON d.id = t.dashboard_id "
            "WHERE LOWER(t.term) = $1"
        )
        return await self._uids(sql, TEMPLATE_TAG)


class MysqlGrafanaDatabase:
    """Lifecycle queries over an aiomysql connection pool.

    Grafana on MySQL keeps its tables in the connection's database, so there
    is no schema prefix, and ``is_folder`` is a tinyint.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str = "grafana",
    ) -> None:
        self._connect_kwargs = {
            "host": host,
            "port": port,
            "user": user,
            "password": password,
            "db": database,
        }
        self._pool: Optional[Any] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "MysqlGrafanaDatabase":
        return cls(
            host=settings.mysql_host,
            port=settings.mysql_port,
            user=settings.mysql_user,
            password=settings.mysql_password,
            database=settings.mysql_database,
        )

    async def connect(self) -> None:
        """Create the pool; raises when the database cannot be reached."""
        if self._pool is None:
            self._pool = await aiomysql.create_pool(
                minsize=1, maxsize=4, autocommit=True, **self._connect_kwargs
            )
            logger.info(
                "grafana_db.connected",
                extra={"host": self._connect_kwargs["host"], "dialect": "mysql"},
            )

    async def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None

    async def _uids(self, sql: str, *args: Any) -> List[str]:
        if self._pool is None:
            await self.connect()
        async with self._pool.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, args or None)
                rows = await cursor.fetchall()
        return [row["uid"] for row in rows]

    async def created_or_template_uids(self, since: datetime) -> List[str]:
        sql = (
            "SELECT DISTINCT d.uid FROM dashboard d "
            "LEFT OUTER JOIN dashboard_tag t ON d.id = t.dashboard_id "
            "WHERE LOWER(t.term) LIKE %s OR d.created > %s"
        )
        return await self._uids(sql, f"%{TEMPLATE_TAG}%", naive_utc(since))

    async def updated_uids(self, since: datetime) -> List[str]:
        return await self._uids("SELECT uid FROM dashboard WHERE updated > %s", naive_utc(since))

    async def live_dashboard_uids(self) -> List[str]:
        return await self._uids("SELECT uid FROM dashboard WHERE is_folder = 0")

    async def template_dashboard_uids(self) -> List[str]:
        sql = (
            "SELECT DISTINCT d.uid FROM dashboard d "
            "JOIN dashboard_tag t ON d.id = t.dashboard_id "
            "WHERE LOWER(t.term) = %s"
        )
        return await self._uids(sql, TEMPLATE_TAG)


def grafana_database_from_settings(settings: Any) -> Optional[Any]:
    """The configured Grafana database, MySQL taking precedence, or None."""
    if settings.mysql_configured:
        return MysqlGrafanaDatabase.from_settings(settings)
    if settings.postgres_configured:
        return PostgresGrafanaDatabase.from_settings(settings)
    return None
