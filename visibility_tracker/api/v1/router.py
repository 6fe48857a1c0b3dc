from fastapi import APIRouter

from visibility_tracker.api.v1.collection import router as collection_router
from visibility_tracker.api.v1.scoring import router as scoring_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(collection_router)
api_v1_router.include_router(scoring_router)
