from fastapi import APIRouter

from pda_logistics.api.v1.endpoints import logistics

api_router = APIRouter(prefix="/api/v1")

# Logistics core
api_router.include_router(logistics.router)
