from consentflow.models.consent import AuditMetadata, AuditRecord, ConsentPolicy, ConsentSnapshot
from consentflow.models.contact import BatchUpdateInput, Contact, ContactFilter, ContactPage, FilterOperator
from consentflow.models.enums import (
    AlertLevel,
    CategoryConsent,
    ConsentAction,
    ConsentCategory,
    ConsentSource,
    ConsentStatus,
    InactivityAction,
    LegalBasis,
    LifecycleState,
    PurgeReason,
    ReconsentReason,
)
from consentflow.models.results import (
    AuditComplianceReport,
    AuditSummary,
    ComplianceAlert,
    ComplianceMetricsReport,
    DashboardData,
    InactivityCheckResult,
    InactivityRunResult,
    PurgeRunResult,
    ReconsentCheck,
    ReconsentRunResult,
)

__all__ = [
    "AlertLevel",
    "AuditComplianceReport",
    "AuditMetadata",
    "AuditRecord",
    "AuditSummary",
    "BatchUpdateInput",
    "CategoryConsent",
    "ComplianceAlert",
    "ComplianceMetricsReport",
    "ConsentAction",
    "ConsentCategory",
    "ConsentPolicy",
    "ConsentSnapshot",
    "ConsentSource",
    "ConsentStatus",
    "Contact",
    "ContactFilter",
    "ContactPage",
    "DashboardData",
    "FilterOperator",
    "InactivityAction",
    "InactivityCheckResult",
    "InactivityRunResult",
    "LegalBasis",
    "LifecycleState",
    "PurgeReason",
    "PurgeRunResult",
    "ReconsentCheck",
    "ReconsentReason",
    "ReconsentRunResult",
]
