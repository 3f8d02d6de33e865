"""Result models returned by the decision engine, runner and reports."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from consentflow.models.consent import AuditRecord
from consentflow.models.enums import (
    AlertLevel,
    ConsentAction,
    ConsentCategory,
    InactivityAction,
    LegalBasis,
    LifecycleState,
    PurgeReason,
    ReconsentReason,
)

# ---------------------------------------------------------------------------
# Decision engine
# ---------------------------------------------------------------------------


class InactivityCheckResult(BaseModel):
    """Outcome of evaluating one contact against the inactivity ladder.

    ``days_since_activity`` is ``None`` when the contact has never
    recorded any activity.
    """

    contact_id: str
    email: str = ""
    last_activity_date: datetime | None = None
    days_since_activity: int | None = None
    is_inactive: bool
    recommended_action: InactivityAction
    error: str | None = None


class ReconsentCheck(BaseModel):
    required: bool
    reason: ReconsentReason | None = None
    expiry_date: datetime | None = None
    days_until_expiry: int | None = None


# ---------------------------------------------------------------------------
# Reconciliation runs
# ---------------------------------------------------------------------------


class InactivityRunResult(BaseModel):
    total_checked: int = 0
    inactive_count: int = 0
    scheduled_for_purge_count: int = 0
    failed_count: int = 0
    action_counts: dict[InactivityAction, int] = Field(
        default_factory=lambda: {action: 0 for action in InactivityAction}
    )
    results: list[InactivityCheckResult] = Field(default_factory=list)


class ReconsentRunResult(BaseModel):
    total_checked: int = 0
    require_reconsent_count: int = 0
    triggered_count: int = 0
    failed_count: int = 0
    triggered_contact_ids: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class PurgeOutcome(BaseModel):
    contact_id: str
    success: bool
    error: str | None = None


class PurgeRunResult(BaseModel):
    purged_count: int = 0
    failed_count: int = 0
    results: list[PurgeOutcome] = Field(default_factory=list)


class PurgeReceipt(BaseModel):
    """Confirmation of a single completed purge."""

    contact_id: str
    reason: PurgeReason
    timestamp: datetime
    audit_retained: bool


class ScheduledPurge(BaseModel):
    contact_id: str
    email: str = ""
    reason: PurgeReason
    scheduled_date: datetime
    retain_audit_log: bool = True


class PurgeStatistics(BaseModel):
    scheduled_for_purge: int = 0
    due_today: int = 0
    purged_last_30_days: int = 0


class ReconsentCandidate(BaseModel):
    contact_id: str
    email: str = ""
    consent_date: datetime | None = None
    expiry_date: datetime | None = None
    days_until_expiry: int | None = None
    already_flagged: bool = False


class ReconsentRequest(BaseModel):
    contact_id: str
    email: str = ""
    categories: list[ConsentCategory] = Field(default_factory=lambda: list(ConsentCategory))
    reason: ReconsentReason


# ---------------------------------------------------------------------------
# Audit reporting
# ---------------------------------------------------------------------------


class AuditSummary(BaseModel):
    total_changes: int = 0
    last_change: datetime | None = None
    granted_count: int = 0
    revoked_count: int = 0
    categories: list[str] = Field(default_factory=list)


class AuditComplianceReport(BaseModel):
    period_start: datetime
    period_end: datetime
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_consent_changes: int = 0
    consents_by_action: dict[str, int] = Field(default_factory=dict)
    consents_by_source: dict[str, int] = Field(default_factory=dict)
    consents_by_category: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Compliance metrics / dashboard
# ---------------------------------------------------------------------------


class CategoryStats(BaseModel):
    category: ConsentCategory
    granted: int = 0
    revoked: int = 0
    pending: int = 0
    coverage: float = 0.0


class LegalBasisStats(BaseModel):
    legal_basis: LegalBasis
    count: int = 0
    percentage: float = 0.0


class ComplianceMetricsReport(BaseModel):
    """Aggregate consent posture of a contact population."""

    total_contacts: int = 0
    contacts_with_consent: int = 0
    contacts_without_consent: int = 0
    contacts_requiring_reconsent: int = 0
    contacts_inactive: int = 0
    contacts_scheduled_for_purge: int = 0
    consent_coverage: float = 0.0
    reconsent_percentage: float = 0.0
    inactive_percentage: float = 0.0
    purge_pending_percentage: float = 0.0
    compliance_score: float = 0.0
    category_breakdown: list[CategoryStats] = Field(default_factory=list)
    legal_basis_breakdown: list[LegalBasisStats] = Field(default_factory=list)
    lifecycle_breakdown: dict[LifecycleState, int] = Field(default_factory=dict)


class ConsentEvent(BaseModel):
    contact_id: str
    action: ConsentAction
    category: str
    timestamp: datetime


class DashboardData(BaseModel):
    metrics: ComplianceMetricsReport
    recent_consent_events: list[ConsentEvent] = Field(default_factory=list)
    generated_at: datetime


class SummaryStats(BaseModel):
    total_contacts: int = 0
    consent_coverage: float = 0.0
    require_reconsent: int = 0
    inactive: int = 0
    scheduled_for_purge: int = 0
    compliance_score: float = 0.0


class ComplianceAlert(BaseModel):
    level: AlertLevel
    message: str
    count: int


class ConsentStatusView(BaseModel):
    """Per-contact consent view returned by the status lookup."""

    contact_id: str
    email: str = ""
    consent_status: str
    legal_basis: LegalBasis
    consent_date: datetime | None = None
    expiry_date: datetime | None = None
    categories: dict[ConsentCategory, str] = Field(default_factory=dict)
    ccpa_opt_out: bool = False
    lifecycle_state: LifecycleState
    reconsent_required: bool
    days_until_expiry: int | None = None
    audit_summary: AuditSummary


class ConsentChangeResult(BaseModel):
    contact_id: str
    action: ConsentAction
    categories: list[str] = Field(default_factory=list)
    expiry_date: datetime | None = None
    audit_record_ids: list[str] = Field(default_factory=list)


class ContactAuditView(BaseModel):
    contact_id: str
    records: list[AuditRecord] = Field(default_factory=list)
    summary: AuditSummary


class DeletionRequestResult(BaseModel):
    contact_id: str
    email: str
    regulation: str
    receipt: PurgeReceipt


class PropertyInitResult(BaseModel):
    created: list[str] = Field(default_factory=list)
    existing: list[str] = Field(default_factory=list)
