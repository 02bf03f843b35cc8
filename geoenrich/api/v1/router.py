from fastapi import APIRouter

from geoenrich.api.v1 import quota, recovery, runs

api_router = APIRouter()

api_router.include_router(runs.router, prefix="/runs", tags=["runs"])
api_router.include_router(recovery.router, prefix="/recovery", tags=["recovery"])
api_router.include_router(quota.router, prefix="/quota", tags=["quota"])
