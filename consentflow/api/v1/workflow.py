"""Lifecycle workflow endpoints.

Manual triggers for the reconciliation runs, purge scheduling, data
subject deletion requests and the background scheduler.  Every route
requires the admin API key.  The three run triggers share the scheduler's
per-job lock and answer 409 while the same job is already running.

Endpoints
---------
- ``POST   /api/v1/workflow/inactivity/check``          -- Run the inactivity check.
- ``GET    /api/v1/workflow/inactivity/approaching``    -- Contacts nearing the threshold.
- ``POST   /api/v1/workflow/inactivity/record/{id}``    -- Record contact activity.
- ``POST   /api/v1/workflow/reconsent/check``           -- Run the re-consent check.
- ``GET    /api/v1/workflow/reconsent/required``        -- Contacts needing re-consent.
- ``POST   /api/v1/workflow/reconsent/trigger/{id}``    -- Request re-consent.
- ``POST   /api/v1/workflow/reconsent/process/{id}``    -- Apply a re-consent answer.
- ``POST   /api/v1/workflow/purge/execute``             -- Purge every due contact.
- ``POST   /api/v1/workflow/purge/schedule/{id}``       -- Schedule a purge.
- ``DELETE /api/v1/workflow/purge/schedule/{id}``       -- Cancel a scheduled purge.
- ``POST   /api/v1/workflow/purge/gdpr-request``        -- GDPR erasure request.
- ``POST   /api/v1/workflow/purge/ccpa-request``        -- CCPA deletion request.
- ``GET    /api/v1/workflow/purge/statistics``          -- Purge counters.
- ``GET    /api/v1/workflow/scheduler/status``          -- Scheduler job status.
- ``POST   /api/v1/workflow/scheduler/run/{job}``       -- Run a job now.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from consentflow.middleware.auth import require_admin_api_key
from consentflow.models.enums import ConsentCategory, ConsentSource, PurgeReason, ReconsentReason
from consentflow.models.results import (
    ConsentChangeResult,
    DeletionRequestResult,
    InactivityCheckResult,
    InactivityRunResult,
    PurgeRunResult,
    PurgeStatistics,
    ReconsentCandidate,
    ReconsentRequest,
    ReconsentRunResult,
    ScheduledPurge,
)
from consentflow.services.consent_service import ConsentService
from consentflow.services.scheduler import ComplianceScheduler, JobName, JobRun, JobStatus

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/workflow",
    tags=["workflow"],
    dependencies=[Depends(require_admin_api_key)],
)


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class ActivityRecorded(BaseModel):
    contact_id: str
    last_activity_date: datetime


class TriggerReconsentRequest(BaseModel):
    reason: ReconsentReason = ReconsentReason.MANUAL_REQUEST
    categories: list[ConsentCategory] | None = None


class ProcessReconsentRequest(BaseModel):
    consent_granted: bool
    categories: dict[ConsentCategory, bool] = Field(min_length=1)
    source: ConsentSource = ConsentSource.WEB_FORM


class SchedulePurgeRequest(BaseModel):
    purge_date: datetime | None = None
    reason: PurgeReason = PurgeReason.INACTIVITY


class PurgeCancelled(BaseModel):
    contact_id: str
    cancelled: bool = True


class DeletionRequest(BaseModel):
    email: str


class SchedulerStatusResponse(BaseModel):
    running: bool
    jobs: list[JobStatus]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_service(request: Request) -> ConsentService:
    """Retrieve the consent service from app state, or raise 503."""
    service = getattr(request.app.state, "consent_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Consent service not initialised.")
    return service


def _get_scheduler(request: Request) -> ComplianceScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialised.")
    return scheduler


# ---------------------------------------------------------------------------
# Inactivity
# ---------------------------------------------------------------------------


@router.post("/inactivity/check", response_model=InactivityRunResult)
async def run_inactivity_check(request: Request) -> InactivityRunResult:
    logger.info("api.workflow.inactivity_check_triggered")
    return await _get_scheduler(request).run_exclusive(JobName.INACTIVITY_CHECK)  # type: ignore[return-value]


@router.get("/inactivity/approaching", response_model=list[InactivityCheckResult])
async def contacts_approaching_inactivity(
    request: Request,
    days: int = Query(default=30, ge=1, le=365),
) -> list[InactivityCheckResult]:
    return await _get_service(request).contacts_approaching_inactivity(days)


@router.post("/inactivity/record/{contact_id}", response_model=ActivityRecorded)
async def record_activity(contact_id: str, request: Request) -> ActivityRecorded:
    recorded_at = await _get_service(request).record_activity(contact_id)
    return ActivityRecorded(contact_id=contact_id, last_activity_date=recorded_at)


# ---------------------------------------------------------------------------
# Re-consent
# ---------------------------------------------------------------------------


@router.post("/reconsent/check", response_model=ReconsentRunResult)
async def run_reconsent_check(request: Request) -> ReconsentRunResult:
    logger.info("api.workflow.reconsent_check_triggered")
    return await _get_scheduler(request).run_exclusive(JobName.RECONSENT_CHECK)  # type: ignore[return-value]


@router.get("/reconsent/required", response_model=list[ReconsentCandidate])
async def contacts_requiring_reconsent(request: Request) -> list[ReconsentCandidate]:
    return await _get_service(request).contacts_requiring_reconsent()


@router.post("/reconsent/trigger/{contact_id}", response_model=ReconsentRequest)
async def trigger_reconsent(
    contact_id: str,
    request: Request,
    body: TriggerReconsentRequest | None = None,
) -> ReconsentRequest:
    body = body or TriggerReconsentRequest()
    return await _get_service(request).trigger_reconsent(contact_id, body.reason, body.categories)


@router.post("/reconsent/process/{contact_id}", response_model=ConsentChangeResult)
async def process_reconsent(
    contact_id: str,
    body: ProcessReconsentRequest,
    request: Request,
) -> ConsentChangeResult:
    """Apply the contact's answers to a re-consent request."""
    return await _get_service(request).process_reconsent(
        contact_id,
        body.consent_granted,
        body.categories,
        source=body.source,
    )


# ---------------------------------------------------------------------------
# Purge
# ---------------------------------------------------------------------------


@router.post("/purge/execute", response_model=PurgeRunResult)
async def run_purge_execution(request: Request) -> PurgeRunResult:
    logger.info("api.workflow.purge_execution_triggered")
    return await _get_scheduler(request).run_exclusive(JobName.PURGE_EXECUTION)  # type: ignore[return-value]


@router.post("/purge/schedule/{contact_id}", response_model=ScheduledPurge)
async def schedule_purge(
    contact_id: str,
    request: Request,
    body: SchedulePurgeRequest | None = None,
) -> ScheduledPurge:
    body = body or SchedulePurgeRequest()
    return await _get_service(request).schedule_purge(contact_id, body.purge_date, body.reason)


@router.delete("/purge/schedule/{contact_id}", response_model=PurgeCancelled)
async def cancel_scheduled_purge(contact_id: str, request: Request) -> PurgeCancelled:
    await _get_service(request).cancel_scheduled_purge(contact_id)
    return PurgeCancelled(contact_id=contact_id)


@router.post("/purge/gdpr-request", response_model=DeletionRequestResult)
async def gdpr_deletion_request(body: DeletionRequest, request: Request) -> DeletionRequestResult:
    """Erase the contact with this email (GDPR right to erasure)."""
    logger.info("api.workflow.gdpr_deletion_requested")
    return await _get_service(request).gdpr_deletion_request(body.email)


@router.post("/purge/ccpa-request", response_model=DeletionRequestResult)
async def ccpa_deletion_request(body: DeletionRequest, request: Request) -> DeletionRequestResult:
    logger.info("api.workflow.ccpa_deletion_requested")
    return await _get_service(request).ccpa_deletion_request(body.email)


@router.get("/purge/statistics", response_model=PurgeStatistics)
async def purge_statistics(request: Request) -> PurgeStatistics:
    return await _get_service(request).purge_statistics()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@router.get("/scheduler/status", response_model=SchedulerStatusResponse)
async def scheduler_status(request: Request) -> SchedulerStatusResponse:
    scheduler = _get_scheduler(request)
    return SchedulerStatusResponse(running=scheduler.is_running, jobs=scheduler.status())


@router.post("/scheduler/run/{job}", response_model=JobRun)
async def run_job(job: JobName, request: Request) -> JobRun:
    """Run a scheduled job immediately; skipped if it is already running."""
    logger.info("api.workflow.job_triggered", job=str(job))
    return await _get_scheduler(request).run_job_now(job)
