"""HTTP API package."""

from wavefleet.api.router import api_router

__all__ = ["api_router"]
