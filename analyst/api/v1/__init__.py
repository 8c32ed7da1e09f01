"""V1 API router aggregation."""

from fastapi import APIRouter

from analyst.api.v1.chats import router as chats_router
from analyst.api.v1.internal import router as internal_router
from analyst.api.v1.system import router as system_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(chats_router)
v1_router.include_router(internal_router)
v1_router.include_router(system_router)
