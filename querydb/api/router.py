from fastapi import APIRouter
from querydb.api.endpoints import datasources

api_router = APIRouter()

# Datasource endpoints under /datasources
api_router.include_router(datasources.router)
