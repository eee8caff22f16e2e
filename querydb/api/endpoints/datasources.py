import logging
from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from querydb.core import schemas
from querydb.core.datasource import DatabaseManager
from querydb.core.exceptions import QueryError

router = APIRouter(prefix="/datasources", tags=["Datasources"])


# The manager is created by the application lifespan
def get_manager(request: Request) -> DatabaseManager:
    return request.app.state.manager


manager_dep = Annotated[DatabaseManager, Depends(get_manager)]


def upgradable_or_404(manager: DatabaseManager, name: str):
    # Also covers upgraders pointing at a datasource that was never registered
    try:
        return manager.upgradable(name)
    except KeyError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Datasource not found")


@router.get(
    "",
    response_model=List[schemas.DataSourceResponse],
    status_code=status.HTTP_200_OK,
)
async def list_datasources(manager: manager_dep):
    return [
        schemas.DataSourceResponse(
            name=ds.name,
            queries_path=ds.config.queries_path,
            is_default=ds is manager.default,
        )
        for ds in manager.datasources.values()
    ]


@router.get("/{name}/version", response_model=schemas.VersionResponse)
async def get_version(name: str, manager: manager_dep):
    upgradable = upgradable_or_404(manager, name)
    try:
        version = await upgradable.current_version()
    except QueryError as error:
        logging.error(f"Failed to read version of {name}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error.message,
        )
    return schemas.VersionResponse(name=name, version=version)


@router.post("/{name}/upgrade", response_model=schemas.UpgradeResponse)
async def upgrade_datasource(name: str, manager: manager_dep):
    """Make the datasource upgradable and run its pending migrations."""
    upgradable = upgradable_or_404(manager, name)
    try:
        previous = await upgradable.current_version()
        await upgradable.upgrade()
        version = await upgradable.current_version()
    except QueryError as error:
        logging.error(f"Failed to upgrade {name}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error.message,
        )
    return schemas.UpgradeResponse(name=name, previous_version=previous, version=version)
