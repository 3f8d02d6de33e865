"""Compliance dashboard endpoints.

Each request walks the whole contact population through the contact
store; nothing is cached between requests.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from consentflow.middleware.auth import require_admin_api_key
from consentflow.models.results import ComplianceAlert, DashboardData, SummaryStats
from consentflow.services.consent_service import ConsentService

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/dashboard",
    tags=["dashboard"],
    dependencies=[Depends(require_admin_api_key)],
)


def _get_service(request: Request) -> ConsentService:
    service = getattr(request.app.state, "consent_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Consent service not initialised.")
    return service


@router.get("", response_model=DashboardData)
async def get_dashboard(request: Request) -> DashboardData:
    """Full compliance metrics plus the ten most recent consent events."""
    return await _get_service(request).get_dashboard()


@router.get("/summary", response_model=SummaryStats)
async def get_summary(request: Request) -> SummaryStats:
    return await _get_service(request).get_summary_stats()


@router.get("/alerts", response_model=list[ComplianceAlert])
async def get_alerts(request: Request) -> list[ComplianceAlert]:
    alerts = await _get_service(request).get_alerts()
    logger.info("api.dashboard.alerts", count=len(alerts))
    return alerts
