"""Backend connections owned by the service manager."""

from __future__ import annotations

from typing import Any

from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from datachat.config import DocumentStoreConfig, RelationalStoreConfig
from datachat.log import get_logger
from datachat.services.base import Service

logger = get_logger(__name__)


class MongoConnection(Service):
    """Async MongoDB client for the configured database."""

    def __init__(self, config: DocumentStoreConfig):
        self._config = config
        self._client: AsyncMongoClient = AsyncMongoClient(config.uri)

    @property
    def service_name(self) -> str:
        return "mongodb"

    @property
    def database(self) -> Any:
        return self._client[self._config.database]

    async def start(self) -> None:
        await self._client.admin.command("ping")
        logger.info("mongodb_connected", database=self._config.database)

    async def stop(self) -> None:
        await self._client.close()
        logger.info("mongodb_closed")

    async def health_check(self) -> bool:
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            logger.warning("mongodb_unhealthy", error=str(e))
            return False
        return True


class SqlConnection(Service):
    """SQLAlchemy async engine for the relational store."""

    def __init__(self, config: RelationalStoreConfig):
        self._engine: AsyncEngine = create_async_engine(config.url, pool_pre_ping=True)

    @property
    def service_name(self) -> str:
        return "sql"

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def _ping(self) -> None:
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def start(self) -> None:
        await self._ping()
        logger.info("sql_connected", dialect=self._engine.dialect.name)

    async def stop(self) -> None:
        await self._engine.dispose()
        logger.info("sql_closed")

    async def health_check(self) -> bool:
        try:
            await self._ping()
        except SQLAlchemyError as e:
            logger.warning("sql_unhealthy", error=str(e))
            return False
        return True
