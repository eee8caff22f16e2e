import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Protocol, runtime_checkable

from querydb.core.config import UpgraderConfig
from querydb.core.datasource import DataSource, QueryContext, rows_of
from querydb.core.exceptions import QueryNotFoundError
from querydb.core.loader import join_path
from querydb.core.schemas import SchemaVersionRecord
from querydb.core.template import substitute_tokens


# -----------------------------------------------------------------------------
# MIGRATION MODULE
# Purpose: keep a datasource's schema at the latest version by running the
# numbered scripts found under `<queries>/db_migration/<name>/`, one version
# at a time, and recording each completed version in the migration table.
#
# A step is not transactional: if its third statement fails, the first two
# stay applied and the version is not recorded. Write steps so that they can
# be re-run, or keep one statement per step.
# -----------------------------------------------------------------------------


logger = logging.getLogger(__name__)

TABLE_EXISTS_SQL = (
    "select count(*) as cnt from sqlite_master where type = 'table' and name = :migrationtable"
)
VERSION_SQL = "select max(version) as version from {migrationtable} where name = :name"
CREATE_TABLE_SQL = "create table {migrationtable} (name text, version integer)"
INSERT_VERSION_SQL = "insert into {migrationtable} ( name , version ) values ( :name , :version )"


def migration_name(version: int) -> str:
    return f"migration_{version:08d}"


@dataclass
class MigrationContext:
    """
    Available to a migration script as `context.migration`.

    `datasource` is rooted at the step's own directory
    (`db_migration/<name>/migration_00000001/`), so sub-statement files are
    referenced by their plain names.
    """

    datasource: DataSource
    version: int
    upgrader: "DataSourceUpgrader"
    dir: str

    async def execute_scripts(self, scripts: List[str]) -> List[Any]:
        """Run statement files strictly in the given order, one at a time."""
        results = []
        for script in scripts:
            logger.info(f"Executing sql statement in: {self.dir}{script}")
            results.append(await self.datasource.execute(script))
        return results


@runtime_checkable
class Upgradable(Protocol):
    async def upgrade(self) -> DataSource: ...


class DataSourceUpgrader:
    """
    Advances the schema version of one datasource.

    Example:
        upgrader = DataSourceUpgrader(ds, UpgraderConfig(name="main"))
        await upgrader.make_upgradable()
        await upgrader.upgrade()
    """

    def __init__(self, datasource: DataSource, config: Optional[UpgraderConfig] = None):
        self.datasource = datasource
        self.config = config or UpgraderConfig(name=datasource.name)
        self.migration_root = join_path(
            datasource.config.queries_path, "db_migration", self.config.name, ""
        )

    @property
    def table(self) -> str:
        return self.config.migration_table

    def _sql(self, template: str) -> str:
        return substitute_tokens(template, {"migrationtable": self.table})

    async def _scalar(self, sql: str, args: Dict[str, Any]) -> Any:
        rows = rows_of(await self.datasource.execute_unsafe(sql, args))
        return next(iter(rows[0].values())) if rows else None

    async def has_migration_table(self) -> bool:
        found = (await self._scalar(TABLE_EXISTS_SQL, {"migrationtable": self.table}) or 0) > 0
        logger.info(f"Migration table {'found' if found else 'not found'}: {self.table}")
        return found

    async def current_version(self) -> Optional[int]:
        """Recorded version, or None when the datasource is not upgradable."""
        if not await self.has_migration_table():
            return None
        return await self._database_version()

    async def _database_version(self) -> int:
        version = await self._scalar(self._sql(VERSION_SQL), {"name": self.config.name})
        return int(version or 0)

    async def make_upgradable(self) -> bool:
        """
        Create the migration table with a version 0 row, unless it exists.

        Returns:
            True when the table was created.
        """
        if await self.has_migration_table():
            return False
        logger.info(f"Creating migration table {self.table}")
        await self.datasource.execute_unsafe(self._sql(CREATE_TABLE_SQL))
        await self._record(self.datasource, SchemaVersionRecord(name=self.config.name, version=0))
        return True

    async def _record(self, datasource: DataSource, record: SchemaVersionRecord):
        logger.info(f"Adding migration information to table {self.table}: {record.name} v{record.version}")
        await datasource.execute_unsafe(self._sql(INSERT_VERSION_SQL), record.model_dump())

    async def _run_step(self, migrations: DataSource, version: int) -> bool:
        """Run migration `version`; False when its script does not exist."""
        plain_name = migration_name(version)
        script = plain_name + ".py"
        logger.info(f"Attempting execution of migration script {script}")

        step = MigrationContext(
            datasource=migrations.derive(join_path(self.migration_root, plain_name, "")),
            version=version,
            upgrader=self,
            dir=plain_name + "/",
        )
        context = QueryContext(datasource=self.datasource, migration=step)
        runner = migrations.runner(script, {}, {}, context)
        try:
            await runner.execute()
        except QueryNotFoundError as error:
            # Only the step script itself being absent ends the upgrade
            if error.path != runner.query_path:
                raise
            logger.info(f"No migration script {script}; upgrade complete")
            return False
        return True

    async def upgrade(self) -> DataSource:
        """
        Run every migration after the recorded version, in order.

        Stops at the first missing script. A datasource without a migration
        table is returned untouched. Any other error propagates and the
        failed step's version is not recorded.
        """
        if not await self.has_migration_table():
            return self.datasource

        version = await self._database_version()
        migrations = self.datasource.derive(self.migration_root)
        while await self._run_step(migrations, version + 1):
            version += 1
            await self._record(migrations, SchemaVersionRecord(name=self.config.name, version=version))
        logger.info(f"Datasource '{self.datasource.name}' at version {version}")
        return self.datasource


class UpgradableDataSource:
    """A datasource together with the upgrader that migrates it."""

    def __init__(self, datasource: DataSource, config: Optional[UpgraderConfig] = None):
        self.datasource = datasource
        self.upgrader = DataSourceUpgrader(datasource, config)

    @property
    def name(self) -> str:
        return self.datasource.name

    async def current_version(self) -> Optional[int]:
        return await self.upgrader.current_version()

    async def upgrade(self) -> DataSource:
        await self.upgrader.make_upgradable()
        return await self.upgrader.upgrade()
