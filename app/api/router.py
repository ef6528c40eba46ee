"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from app.api.health import router as health_router
from app.api.matches import router as matches_router
from app.api.duplicates import router as duplicates_router
from app.api.fraud import router as fraud_router
from app.api.advanced import router as advanced_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(matches_router)
api_router.include_router(duplicates_router)
api_router.include_router(fraud_router)
api_router.include_router(advanced_router)
