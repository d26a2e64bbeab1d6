"""Session monitoring routes."""

from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Path

from wavefleet.api.dependencies import get_session_monitor
from wavefleet.application.services import SessionMonitorService
from wavefleet.domain.errors import DispatchNotFoundError, DispatchValidationError
from wavefleet.domain.monitoring_models import SessionDetailResponse, SessionListResponse

router = APIRouter(prefix="/sessions", tags=["session monitoring"])


def _raise_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, DispatchNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DispatchValidationError):
        raise HTTPException(status_code=400, detail=str(exc))
    raise HTTPException(status_code=500, detail="Unexpected session error")


@router.get("", response_model=SessionListResponse, status_code=200)
async def list_sessions(
    monitor: SessionMonitorService = Depends(get_session_monitor),
) -> SessionListResponse:
    """List sessions with their manifest stats."""

    try:
        return await monitor.list_sessions()
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.get("/{session_id}", response_model=SessionDetailResponse, status_code=200)
async def get_session(
    session_id: str = Path(...),
    monitor: SessionMonitorService = Depends(get_session_monitor),
) -> SessionDetailResponse:
    """Get one session with stats counted from its task records."""

    try:
        return await monitor.get_session(session_id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


__all__ = ["router"]
