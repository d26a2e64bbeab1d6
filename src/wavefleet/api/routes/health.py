"""Liveness and readiness probes."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from wavefleet.api.dependencies import get_session_monitor
from wavefleet.application.services import SessionMonitorService
from wavefleet.domain.errors import ObjectStoreError
from wavefleet.domain.monitoring_models import ReadinessResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness probe."""

    return {"status": "ok"}


@router.get("/readyz", response_model=ReadinessResponse)
async def readyz(
    monitor: SessionMonitorService = Depends(get_session_monitor),
) -> ReadinessResponse:
    """Readiness probe backed by a state store listing."""

    try:
        return await monitor.check_ready()
    except ObjectStoreError as exc:
        logger.warning("State store is not ready: %s", exc)
        raise HTTPException(status_code=503, detail="State store unavailable") from exc


__all__ = ["router"]
