import logging
from enum import Enum
from typing import Dict, Any, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError

from querydb.core.binder import bind
from querydb.core.config import DataSourceConfig
from querydb.core.database import StorageConnection, open_connection
from querydb.core.exceptions import QueryExecutionError
from querydb.core.loader import ResourceLoader, join_path
from querydb.core.registry import Registry
from querydb.core.schemas import ParsedQuery, ResultSet, ScriptResult
from querydb.core.template import TemplateProcessor


# -----------------------------------------------------------------------------
# RUNNER MODULE - Orchestration
# Purpose: run one query invocation: connect, load text, preprocess, bind,
# submit to the storage backend.
# -----------------------------------------------------------------------------


logger = logging.getLogger(__name__)


class QueryStage(Enum):
    """Stages of a single query invocation."""

    IDLE = "idle"
    CONNECTION_READY = "connection_ready"
    TEXT_LOADED = "text_loaded"
    PREPROCESSED = "preprocessed"
    BOUND = "bound"
    EXECUTED = "executed"
    FAILED = "failed"


class QueryRunner:
    """
    Executes one query against a datasource configuration.

    A runner is built per call; connections, query text and compiled
    scripts come from the shared registry.
    """

    def __init__(
        self,
        config: DataSourceConfig,
        registry: Registry,
        loader: ResourceLoader,
        processor: TemplateProcessor,
        query_name: str,
        template_args: Optional[Dict[str, Any]] = None,
        args: Optional[Dict[str, Any]] = None,
        context: Any = None,
    ):
        self.config = config
        self.registry = registry
        self.loader = loader
        self.processor = processor
        self.query_name = query_name
        self.query_path = join_path(config.queries_path, query_name)
        self.template_args = template_args or {}
        self.args = args or {}
        self.context = context
        self.stage = QueryStage.IDLE
        self._connection: Optional[StorageConnection] = None

    def _advance(self, stage: QueryStage):
        self.stage = stage
        logger.debug(f"[{self.config.name}] {self.query_path}: {stage.value}")

    async def _connect(self):
        self._connection = await self.registry.connection(
            self.config.name, lambda: open_connection(self.config)
        )
        self._advance(QueryStage.CONNECTION_READY)

    async def _read_query(self):
        definition = await self.registry.definition(self.query_path, self.loader.read_text)
        self._advance(QueryStage.TEXT_LOADED)
        return definition

    def _bind(self, resolved: Union[str, ParsedQuery, ScriptResult]):
        if isinstance(resolved, str):
            resolved = bind(resolved, self.args)
        self._advance(QueryStage.BOUND)
        return resolved

    async def _execute_sql(self, query: Union[ParsedQuery, ScriptResult]) -> Any:
        if isinstance(query, ScriptResult):
            self._advance(QueryStage.EXECUTED)
            return query.value
        try:
            result = await self._connection.execute_sql(query.text, query.parameters)
        except SQLAlchemyError as error:
            logger.error(
                f"Error executing query {self.query_path}. "
                f"Query: {query.text!r} Parameters: {query.parameters!r} Error: {error}"
            )
            raise QueryExecutionError(query.text, query.parameters, error, self.query_path) from error
        self._advance(QueryStage.EXECUTED)
        return result

    async def _run(self, steps) -> Any:
        try:
            return await steps()
        except Exception:
            self.stage = QueryStage.FAILED
            raise

    async def execute(self) -> Union[ResultSet, Any]:
        """Full pipeline on the query file named by this runner."""

        async def steps():
            await self._connect()
            definition = await self._read_query()
            resolved = await self.processor.resolve(
                definition.text,
                self.template_args,
                self.context,
                definition.path,
                definition.scripting,
            )
            self._advance(QueryStage.PREPROCESSED)
            return await self._execute_sql(self._bind(resolved))

        return await self._run(steps)

    async def execute_unsafe(self, sql: str) -> Union[ResultSet, Any]:
        """Bind and run caller-supplied SQL; no template resolution."""

        async def steps():
            await self._connect()
            self._advance(QueryStage.PREPROCESSED)
            return await self._execute_sql(self._bind(sql))

        return await self._run(steps)

    async def execute_simple(self, parameters: Optional[Sequence[Any]] = None) -> ResultSet:
        """Run the query file as-is with already positional parameters."""

        async def steps():
            await self._connect()
            definition = await self._read_query()
            self._advance(QueryStage.PREPROCESSED)
            query = ParsedQuery(text=definition.text, parameters=list(parameters or []))
            self._advance(QueryStage.BOUND)
            return await self._execute_sql(query)

        return await self._run(steps)

    async def execute_simple_unsafe(
        self, sql: str, parameters: Optional[Sequence[Any]] = None
    ) -> ResultSet:
        async def steps():
            await self._connect()
            self._advance(QueryStage.PREPROCESSED)
            query = ParsedQuery(text=sql, parameters=list(parameters or []))
            self._advance(QueryStage.BOUND)
            return await self._execute_sql(query)

        return await self._run(steps)
