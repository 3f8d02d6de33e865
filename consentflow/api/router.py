"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.

Includes:
    * Consent: per-contact consent, property schema, audit trail
    * Workflow: inactivity, re-consent, purge and scheduler triggers
    * Dashboard: compliance metrics, summary and alerts
    * OAuth: HubSpot authorization flow
    * Health
"""

from __future__ import annotations

from fastapi import APIRouter

from consentflow.api.v1 import consent, dashboard, health, oauth, workflow

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health.router)
api_router.include_router(oauth.router)
api_router.include_router(consent.router)
api_router.include_router(workflow.router)
api_router.include_router(dashboard.router)
