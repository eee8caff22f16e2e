import inspect
import logging
from dataclasses import dataclass
from typing import Dict, Any, Callable, List, Optional, Sequence

from querydb.core.config import DataSourceConfig, UpgraderConfig
from querydb.core.exceptions import QueryError, RowCountError
from querydb.core.loader import ResourceLoader
from querydb.core.registry import Registry
from querydb.core.runner import QueryRunner
from querydb.core.schemas import ResultSet
from querydb.core.template import ScriptEvaluator, TemplateProcessor


logger = logging.getLogger(__name__)

# Marks "no default given" so that None stays a usable default
MISSING = object()


@dataclass
class QueryContext:
    """What a scripted query receives as `context`."""

    datasource: "DataSource"
    query: Optional["Query"] = None
    migration: Any = None


def rows_of(result: Any) -> List[Dict[str, Any]]:
    if isinstance(result, ResultSet):
        return result.rows
    if isinstance(result, (list, tuple)):
        return list(result)
    raise QueryError(f"Query did not produce rows: {result!r}")


class Query:
    """
    A named query file bound to a datasource and its template arguments.

    Example:
        -- queries/get_people.sql
        select * from people
        where 1 = 1
        -- age_min -- and age >= :age_min
        -- age_max -- and age <= :age_max

        rows = await ds.query("get_people.sql").list({"age_min": 20})
    """

    def __init__(
        self,
        datasource: "DataSource",
        name: str,
        template_args: Optional[Dict[str, Any]] = None,
        context: Any = None,
    ):
        self.datasource = datasource
        self.name = name
        self.template_args = template_args or {}
        self.context = context or QueryContext(datasource=datasource, query=self)

    def _runner(self, args: Optional[Dict[str, Any]] = None) -> QueryRunner:
        return self.datasource.runner(self.name, self.template_args, args, self.context)

    async def execute(self, args: Optional[Dict[str, Any]] = None) -> Any:
        """Run the query and return the raw result set (or a script's value)."""
        return await self._runner(args).execute()

    async def execute_unsafe(self, sql: str, args: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run `sql` itself instead of the query file.

        Only the named parameters are processed; whatever text is passed
        will run, so never feed it user input.
        """
        return await self._runner(args).execute_unsafe(sql)

    async def execute_simple(self, parameters: Optional[Sequence[Any]] = None) -> ResultSet:
        return await self._runner().execute_simple(parameters)

    async def execute_simple_unsafe(
        self, sql: str, parameters: Optional[Sequence[Any]] = None
    ) -> ResultSet:
        return await self._runner().execute_simple_unsafe(sql, parameters)

    async def list(self, args: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return rows_of(await self.execute(args))

    async def iterate(
        self, args: Optional[Dict[str, Any]], callback: Callable[..., Any]
    ) -> List[Dict[str, Any]]:
        """
        Call `callback(row, index, result)` for every row, in order.

        Coroutine callbacks are awaited one at a time. Returns all rows.
        """
        result = await self.execute(args)
        rows = rows_of(result)
        for index, row in enumerate(rows):
            outcome = callback(row, index, result)
            if inspect.isawaitable(outcome):
                await outcome
        return rows

    async def unique(self, args: Optional[Dict[str, Any]] = None, default: Any = MISSING) -> Any:
        """Exactly one row; zero rows return `default` when one is given."""
        rows = rows_of(await self.execute(args))
        if len(rows) > 1:
            raise RowCountError(1, len(rows), self.name)
        if not rows:
            if default is MISSING:
                raise RowCountError(1, 0, self.name)
            return default
        return rows[0]

    async def first(self, args: Optional[Dict[str, Any]] = None, default: Any = MISSING) -> Any:
        """First row of at least one; zero rows return `default` when given."""
        rows = rows_of(await self.execute(args))
        if not rows:
            if default is MISSING:
                raise RowCountError(1, 0, self.name)
            return default
        return rows[0]

    async def scalar(self, args: Optional[Dict[str, Any]] = None, default: Any = MISSING) -> Any:
        """First column of the unique row."""
        row = await self.unique(args, MISSING if default is MISSING else {"value": default})
        for value in row.values():
            return value
        raise QueryError(f"Query {self.name} returned a row with no columns", self.name)


class DataSource:
    """
    A named database plus the root of its query files.

    Every method takes the query name first; the arguments double as
    template arguments unless `template_args` is given.
    """

    def __init__(
        self,
        config: DataSourceConfig,
        registry: Optional[Registry] = None,
        loader: Optional[ResourceLoader] = None,
        evaluator: Optional[ScriptEvaluator] = None,
    ):
        self.config = config
        self.registry = registry or Registry()
        self.loader = loader or ResourceLoader()
        self.processor = TemplateProcessor(self.registry, evaluator)

    @property
    def name(self) -> str:
        return self.config.name

    def derive(self, queries_path: str) -> "DataSource":
        """Same database and caches, different query root."""
        config = self.config.model_copy(update={"queries_path": queries_path})
        derived = DataSource(config, self.registry, self.loader)
        derived.processor = self.processor
        return derived

    def runner(
        self,
        name: str,
        template_args: Optional[Dict[str, Any]] = None,
        args: Optional[Dict[str, Any]] = None,
        context: Any = None,
    ) -> QueryRunner:
        return QueryRunner(
            self.config, self.registry, self.loader, self.processor,
            name, template_args, args, context,
        )

    def query(self, name: str, template_args: Optional[Dict[str, Any]] = None) -> Query:
        return Query(self, name, template_args)

    def _query(self, name, args, template_args) -> Query:
        return self.query(name, args if template_args is None else template_args)

    async def execute(self, name: str, args=None, template_args=None) -> Any:
        return await self._query(name, args, template_args).execute(args)

    async def execute_unsafe(self, sql: str, args=None) -> Any:
        return await self.query("__unsafe__", args).execute_unsafe(sql, args)

    async def execute_simple(self, name: str, parameters: Optional[Sequence[Any]] = None) -> ResultSet:
        return await self.query(name).execute_simple(parameters)

    async def execute_simple_unsafe(self, sql: str, parameters: Optional[Sequence[Any]] = None) -> ResultSet:
        return await self.query("__unsafe__").execute_simple_unsafe(sql, parameters)

    async def list(self, name: str, args=None, template_args=None) -> List[Dict[str, Any]]:
        return await self._query(name, args, template_args).list(args)

    async def iterate(self, name: str, args, callback, template_args=None) -> List[Dict[str, Any]]:
        return await self._query(name, args, template_args).iterate(args, callback)

    async def scalar(self, name: str, args=None, default: Any = MISSING, template_args=None) -> Any:
        return await self._query(name, args, template_args).scalar(args, default)

    async def unique(self, name: str, args=None, default: Any = MISSING, template_args=None) -> Any:
        return await self._query(name, args, template_args).unique(args, default)

    async def first(self, name: str, args=None, default: Any = MISSING, template_args=None) -> Any:
        return await self._query(name, args, template_args).first(args, default)


class DatabaseManager:
    """
    Registry of datasources sharing one set of caches.

    Events: `datasource_registered(name, datasource)` and
    `datasource_get(name, datasource)`.
    """

    def __init__(
        self,
        registry: Optional[Registry] = None,
        loader: Optional[ResourceLoader] = None,
        evaluator: Optional[ScriptEvaluator] = None,
    ):
        self.registry = registry or Registry()
        self.loader = loader or ResourceLoader()
        self.evaluator = evaluator
        self.datasources: Dict[str, DataSource] = {}
        self.upgraders: Dict[str, UpgraderConfig] = {}
        self.default: Optional[DataSource] = None
        self._handlers: Dict[str, List[Callable]] = {}

    def on(self, event: str, handler: Callable):
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable):
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def fire(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            handler(*args)

    def register(self, config: DataSourceConfig) -> DataSource:
        datasource = DataSource(config, self.registry, self.loader, self.evaluator)
        self.datasources[config.name] = datasource
        if config.is_default:
            self.default = datasource
        logger.info(f"Registered datasource '{config.name}' ({config.queries_path})")
        self.fire("datasource_registered", config.name, datasource)
        return datasource

    def get(self, name: Optional[str] = None) -> Optional[DataSource]:
        """Named datasource; without a name the default, else the first one."""
        if name is None:
            datasource = self.default or next(iter(self.datasources.values()), None)
        else:
            datasource = self.datasources.get(name)
        self.fire("datasource_get", name, datasource)
        return datasource

    def register_upgrader(self, config: UpgraderConfig):
        self.upgraders[config.name] = config

    def upgradable(self, name: Optional[str] = None):
        """
        Datasource paired with its upgrader.

        `name` is looked up as a registered upgrader first, then as a
        datasource migrated under its own name.
        """
        from querydb.core.migration import UpgradableDataSource

        config = self.upgraders.get(name) if name is not None else None
        datasource = self.get(config.datasource_name if config else name)
        if datasource is None:
            raise KeyError(f"Unknown datasource: {name}")
        if config is None:
            config = self.upgraders.get(datasource.name) or UpgraderConfig(name=datasource.name)
        return UpgradableDataSource(datasource, config)

    async def dispose(self):
        await self.registry.dispose()
