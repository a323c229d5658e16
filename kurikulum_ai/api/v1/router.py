from fastapi import APIRouter

from kurikulum_ai.api.v1.generation import router as generation_router
from kurikulum_ai.api.v1.status import router as status_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(generation_router)
api_v1_router.include_router(status_router)
