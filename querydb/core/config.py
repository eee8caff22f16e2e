import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DataSourceConfig(BaseModel):
    """How to reach one datasource and where its query files live."""

    name: str
    url: str = "sqlite+aiosqlite:///querydb.db"
    queries_path: str = "queries/"
    is_default: bool = False
    echo: bool = False

    model_config = ConfigDict(frozen=True)


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///querydb.db"
    DATASOURCE_NAME: str = "main"
    QUERIES_PATH: str = "queries/"
    MIGRATION_TABLE: str = "db_migration_info"
    RESOURCE_TIMEOUT: float = 5.0
    SQL_ECHO: bool = False
    UPGRADE_ON_STARTUP: bool = True

    # Extra datasources, given as a JSON list in the environment
    DATASOURCES: List[DataSourceConfig] = []

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def datasource_configs(self) -> List[DataSourceConfig]:
        main = DataSourceConfig(
            name=self.DATASOURCE_NAME,
            url=self.DATABASE_URL,
            queries_path=self.QUERIES_PATH,
            is_default=True,
            echo=self.SQL_ECHO,
        )
        return [main] + [c for c in self.DATASOURCES if c.name != main.name]


# Create a single instance of the settings to use everywhere
settings = Settings()


class UpgraderConfig(BaseModel):
    """
    Versioning setup for one datasource.

    `name` identifies the migration set (rows in the migration table and the
    `db_migration/<name>/` directory); `datasource` names the datasource the
    migrations run against and defaults to `name`.
    """

    name: str
    datasource: Optional[str] = None
    migration_table: str = Field(default_factory=lambda: settings.MIGRATION_TABLE)

    @field_validator("migration_table")
    @classmethod
    def check_table_name(cls, value: str) -> str:
        if not IDENTIFIER.match(value):
            raise ValueError(f"Invalid migration table name: {value!r}")
        return value

    @property
    def datasource_name(self) -> str:
        return self.datasource or self.name
