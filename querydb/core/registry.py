import asyncio
import logging
from typing import Dict, Any, Awaitable, Callable

from querydb.core.database import StorageConnection
from querydb.core.schemas import QueryDefinition


logger = logging.getLogger(__name__)


class Registry:
    """
    Process-wide caches shared by every datasource of a DatabaseManager.

    Holds one open connection per datasource name, the loaded query
    definitions keyed by path and the compiled query scripts keyed by path.
    Entries are inserted once (the first successful population wins) and
    never evicted; `dispose()` is the shutdown hook.
    """

    def __init__(self):
        self.connections: Dict[str, StorageConnection] = {}
        self.definitions: Dict[str, QueryDefinition] = {}
        self.scripts: Dict[str, Any] = {}
        self._connecting: Dict[str, asyncio.Future] = {}

    async def connection(
        self, name: str, opener: Callable[[], Awaitable[StorageConnection]]
    ) -> StorageConnection:
        conn = self.connections.get(name)
        if conn is not None:
            return conn

        # Concurrent first connects for the same name share one attempt
        pending = self._connecting.get(name)
        if pending is None:
            pending = asyncio.ensure_future(opener())
            self._connecting[name] = pending
        try:
            conn = await asyncio.shield(pending)
        finally:
            if self._connecting.get(name) is pending and pending.done():
                del self._connecting[name]

        if name not in self.connections:
            logger.info(f"Opened connection for datasource '{name}'")
        return self.connections.setdefault(name, conn)

    async def definition(
        self, path: str, reader: Callable[[str], Awaitable[str]]
    ) -> QueryDefinition:
        definition = self.definitions.get(path)
        if definition is None:
            text = await reader(path)
            definition = self.definitions.setdefault(path, QueryDefinition.load(path, text))
        return definition

    async def dispose(self):
        """Close every cached connection. Only meant for process shutdown."""
        connections = list(self.connections.values())
        self.connections.clear()
        for conn in connections:
            await conn.close()
