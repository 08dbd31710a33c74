from fastapi import APIRouter

from promptforge.api.v1.testsets import router as testsets_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(testsets_router)
