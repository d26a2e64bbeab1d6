"""Dependency providers for FastAPI routes."""

from functools import lru_cache

from wavefleet.application.services import SessionMonitorService
from wavefleet.bootstrap import build_session_monitor
from wavefleet.config import Settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return singleton settings."""

    return Settings()


@lru_cache(maxsize=1)
def get_session_monitor() -> SessionMonitorService:
    """Return singleton monitoring service graph."""

    return build_session_monitor(get_settings())


__all__ = ["get_session_monitor", "get_settings"]
