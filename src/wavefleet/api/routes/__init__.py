"""Route modules public API."""

from wavefleet.api.routes.health import router as health_router
from wavefleet.api.routes.sessions import router as sessions_router

__all__ = ["health_router", "sessions_router"]
