import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from querydb.api.router import api_router
from querydb.core.config import Settings, settings
from querydb.core.datasource import DatabaseManager
from querydb.core.loader import ResourceLoader

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_manager(config: Settings) -> DatabaseManager:
    manager = DatabaseManager(loader=ResourceLoader(config.RESOURCE_TIMEOUT))
    for datasource_config in config.datasource_configs():
        manager.register(datasource_config)
    return manager


async def run_migrations(manager: DatabaseManager):
    """Bring every registered datasource to its latest schema version"""
    for name in list(manager.datasources):
        await manager.upgradable(name).upgrade()


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or settings

    # Cached datasource connections are closed on shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.manager = build_manager(config)
        # Bring every registered datasource to its latest schema version
        if config.UPGRADE_ON_STARTUP:
            try:
                await run_migrations(app.state.manager)
                logger.info("Migrations applied successfully (or already up-to-date)")
            except Exception as e:
                logger.error(f"Migration error during startup: {e}")

        yield
        await app.state.manager.dispose()

    app = FastAPI(title="querydb", lifespan=lifespan)

    # Datasource listing, version and upgrade endpoints
    app.include_router(api_router)

    @app.get("/")
    async def root():
        return {"message": "querydb is running", "datasources": len(app.state.manager.datasources)}

    return app


app = create_app()
