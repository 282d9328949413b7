"""Unified API router aggregator.

Adds all individual feature routers here to keep `app.py` clean.
"""
from fastapi import APIRouter

from src.api.routes.monitoring import router as monitoring_router
from src.api.routes.system import router as system_router

api_router = APIRouter()
api_router.include_router(system_router)
api_router.include_router(monitoring_router)

__all__ = ["api_router"]
