"""Health check endpoint for ConsentFlow API v1.

Liveness only: reports uptime, which contact store is wired in and
whether the background scheduler is running.  Does *not* call HubSpot.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str
    uptime_seconds: float
    contact_store: str
    scheduler_running: bool


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.

    Returns 200 if the application process is running and able to
    handle requests.
    """
    state = request.app.state
    start_time: float = getattr(state, "start_time", time.time())
    store = getattr(state, "contact_store", None)
    scheduler = getattr(state, "scheduler", None)

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
        contact_store=type(store).__name__ if store is not None else "not_initialised",
        scheduler_running=scheduler is not None and scheduler.is_running,
    )
