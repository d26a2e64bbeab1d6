"""Top-level API router composition."""

from fastapi import APIRouter

from wavefleet.api.routes import health_router, sessions_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(sessions_router)

__all__ = ["api_router"]
