"""Monitoring API entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from wavefleet import __version__
from wavefleet.api import api_router
from wavefleet.api.dependencies import get_session_monitor, get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    monitor = get_session_monitor()
    try:
        yield
    finally:
        # Postgres pools outlive single requests.
        await monitor.close()


def create_app() -> FastAPI:
    """Build the read-only session monitoring app."""

    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=_lifespan,
    )
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()


def run() -> None:
    """Serve the monitoring API with uvicorn."""

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    logger.info(
        "Serving session monitoring for %s store on %s:%s.",
        settings.object_store_backend,
        settings.host,
        settings.port,
    )
    uvicorn.run("wavefleet.main:app", host=settings.host, port=settings.port)


__all__ = ["app", "create_app", "run"]
