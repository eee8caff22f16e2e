import logging
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from querydb.core.config import DataSourceConfig
from querydb.core.schemas import ResultSet


logger = logging.getLogger(__name__)


class StorageConnection:
    """The single logical connection of a datasource."""

    def __init__(self, engine: AsyncEngine, connection: AsyncConnection):
        self.engine = engine
        self.connection = connection

    async def execute_sql(self, text: str, parameters: Sequence[Any] = ()) -> ResultSet:
        """
        Run one statement with positional `?` parameters.

        Raises whatever the driver raises (sqlalchemy.exc.SQLAlchemyError).
        """
        result = await self.connection.exec_driver_sql(text, tuple(parameters))
        if result.returns_rows:
            rows = [dict(row) for row in result.mappings().all()]
            return ResultSet(rows=rows, rows_affected=0)
        return ResultSet(
            rows=[],
            rows_affected=max(result.rowcount, 0),
            last_insert_id=result.lastrowid,
        )

    async def close(self):
        await self.connection.close()
        await self.engine.dispose()


async def open_connection(config: DataSourceConfig) -> StorageConnection:
    # Every statement commits on its own; no transactions are managed here
    engine = create_async_engine(config.url, echo=config.echo, isolation_level="AUTOCOMMIT")
    connection = await engine.connect()
    logger.debug(f"Connected to {engine.url!r} for datasource '{config.name}'")
    return StorageConnection(engine, connection)
