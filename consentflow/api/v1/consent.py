"""Consent management endpoints.

Per-contact consent changes, the consent property schema and the audit
trail.  Every route requires the admin API key.

Endpoints
---------
- ``POST /api/v1/consent/properties/initialize`` -- Create consent properties.
- ``GET  /api/v1/consent/contact/{id}``          -- Consent status of a contact.
- ``POST /api/v1/consent/contact/{id}/grant``    -- Grant consent.
- ``POST /api/v1/consent/contact/{id}/revoke``   -- Revoke consent.
- ``POST /api/v1/consent/contact/{id}/ccpa-optout`` -- CCPA "Do Not Sell".
- ``GET  /api/v1/consent/audit/{id}``            -- Audit trail of a contact.
- ``POST /api/v1/consent/audit/report``          -- Compliance report.
- ``GET  /api/v1/consent/audit/export``          -- JSON export of the trail.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel

from consentflow.crm.timeline import HubSpotTimelineNotifier
from consentflow.middleware.auth import require_admin_api_key
from consentflow.models.consent import AuditMetadata
from consentflow.models.enums import ConsentCategory, ConsentSource, LegalBasis
from consentflow.models.results import (
    AuditComplianceReport,
    ConsentChangeResult,
    ConsentStatusView,
    ContactAuditView,
    PropertyInitResult,
)
from consentflow.services.consent_service import ConsentService

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/consent",
    tags=["consent"],
    dependencies=[Depends(require_admin_api_key)],
)


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class GrantConsentRequest(BaseModel):
    """Body of a grant; omitting ``categories`` grants every category."""

    categories: list[ConsentCategory] | None = None
    legal_basis: LegalBasis = LegalBasis.CONSENT
    source: ConsentSource = ConsentSource.API
    notes: str | None = None


class RevokeConsentRequest(BaseModel):
    categories: list[ConsentCategory] | None = None
    source: ConsentSource = ConsentSource.API
    notes: str | None = None


class CcpaOptOutRequest(BaseModel):
    source: ConsentSource = ConsentSource.API
    notes: str | None = None


class ComplianceReportRequest(BaseModel):
    start_date: datetime | None = None
    end_date: datetime | None = None


class PropertyInitResponse(BaseModel):
    properties: PropertyInitResult
    timeline_templates: dict[str, list[str]] | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_service(request: Request) -> ConsentService:
    """Retrieve the consent service from app state, or raise 503."""
    service = getattr(request.app.state, "consent_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Consent service not initialised.")
    return service


def _metadata(request: Request, notes: str | None) -> AuditMetadata:
    return AuditMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        notes=notes,
    )


# ---------------------------------------------------------------------------
# Property schema
# ---------------------------------------------------------------------------


@router.post("/properties/initialize", response_model=PropertyInitResponse)
async def initialize_properties(request: Request) -> PropertyInitResponse:
    """Create the consent property group, its properties and, when a
    timeline app is configured, the timeline event templates."""
    service = _get_service(request)
    properties = await service.initialize_properties()

    templates: dict[str, list[str]] | None = None
    notifier = getattr(request.app.state, "timeline_notifier", None)
    if isinstance(notifier, HubSpotTimelineNotifier):
        templates = await notifier.initialize_templates()

    return PropertyInitResponse(properties=properties, timeline_templates=templates)


# ---------------------------------------------------------------------------
# Per-contact consent
# ---------------------------------------------------------------------------


@router.get("/contact/{contact_id}", response_model=ConsentStatusView)
async def get_consent_status(contact_id: str, request: Request) -> ConsentStatusView:
    return await _get_service(request).get_consent_status(contact_id)


@router.post("/contact/{contact_id}/grant", response_model=ConsentChangeResult)
async def grant_consent(
    contact_id: str,
    request: Request,
    body: GrantConsentRequest | None = None,
) -> ConsentChangeResult:
    body = body or GrantConsentRequest()
    logger.info("api.consent.grant", contact_id=contact_id)
    return await _get_service(request).grant_consent(
        contact_id,
        body.categories,
        legal_basis=body.legal_basis,
        source=body.source,
        metadata=_metadata(request, body.notes),
    )


@router.post("/contact/{contact_id}/revoke", response_model=ConsentChangeResult)
async def revoke_consent(
    contact_id: str,
    request: Request,
    body: RevokeConsentRequest | None = None,
) -> ConsentChangeResult:
    body = body or RevokeConsentRequest()
    logger.info("api.consent.revoke", contact_id=contact_id)
    return await _get_service(request).revoke_consent(
        contact_id,
        body.categories,
        source=body.source,
        metadata=_metadata(request, body.notes),
    )


@router.post("/contact/{contact_id}/ccpa-optout", response_model=ConsentChangeResult)
async def ccpa_opt_out(
    contact_id: str,
    request: Request,
    body: CcpaOptOutRequest | None = None,
) -> ConsentChangeResult:
    body = body or CcpaOptOutRequest()
    logger.info("api.consent.ccpa_opt_out", contact_id=contact_id)
    return await _get_service(request).ccpa_opt_out(
        contact_id,
        source=body.source,
        metadata=_metadata(request, body.notes),
    )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/audit/export")
async def export_audit(request: Request, contact_id: str | None = None) -> Response:
    """Download the audit trail (optionally one contact's) as JSON."""
    content = _get_service(request).export_audit(contact_id)
    filename = f"consent-audit-{contact_id}.json" if contact_id else "consent-audit.json"
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/audit/{contact_id}", response_model=ContactAuditView)
async def get_audit(contact_id: str, request: Request) -> ContactAuditView:
    return _get_service(request).get_audit(contact_id)


@router.post("/audit/report", response_model=AuditComplianceReport)
async def compliance_report(
    request: Request,
    body: ComplianceReportRequest | None = None,
) -> AuditComplianceReport:
    """Audit counts by action, source and category over a date range.

    Defaults to the last 30 days when no range is given.
    """
    body = body or ComplianceReportRequest()
    return _get_service(request).get_compliance_report(body.start_date, body.end_date)
