from __future__ import annotations

from enum import StrEnum


class LegalBasis(StrEnum):
    """GDPR Article 6 lawful bases for processing."""

    __slots__ = ()

    CONSENT = "consent"
    LEGITIMATE_INTEREST = "legitimate_interest"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTEREST = "vital_interest"
    PUBLIC_TASK = "public_task"
    NOT_APPLICABLE = "not_applicable"


class ConsentCategory(StrEnum):
    __slots__ = ()

    MARKETING = "marketing"
    ANALYTICS = "analytics"
    PERSONALIZATION = "personalization"


class CategoryConsent(StrEnum):
    """Grant state of a single consent category on the CRM record."""

    __slots__ = ()

    GRANTED = "granted"
    NOT_GRANTED = "not_granted"
    PENDING = "pending"


class ConsentStatus(StrEnum):
    """Overall consent status stored on the contact."""

    __slots__ = ()

    GRANTED = "granted"
    PENDING = "pending"
    REVOKED = "revoked"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class ConsentSource(StrEnum):
    __slots__ = ()

    WEB_FORM = "web_form"
    EMAIL_PREFERENCE = "email_preference"
    API = "api"
    IMPORT = "import"
    MANUAL = "manual"


class ConsentAction(StrEnum):
    __slots__ = ()

    GRANTED = "granted"
    REVOKED = "revoked"
    RENEWED = "renewed"
    EXPIRED = "expired"
    PURGED = "purged"


class InactivityAction(StrEnum):
    """Escalation ladder for inactive contacts, least to most urgent."""

    __slots__ = ()

    NO_ACTION = "no_action"
    SEND_REMINDER = "send_reminder"
    FLAG_FOR_REVIEW = "flag_for_review"
    SCHEDULE_PURGE = "schedule_purge"


class LifecycleState(StrEnum):
    __slots__ = ()

    NO_CONSENT = "no_consent"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    RECONSENT_REQUIRED = "reconsent_required"
    INACTIVE_FLAGGED = "inactive_flagged"
    PURGE_SCHEDULED = "purge_scheduled"
    PURGED = "purged"


class ReconsentReason(StrEnum):
    __slots__ = ()

    EXPIRY = "consent_expiry"
    POLICY_CHANGE = "policy_change"
    CATEGORY_UPDATE = "category_update"
    REGULATORY_REQUIREMENT = "regulatory_requirement"
    MANUAL_REQUEST = "manual_request"


class PurgeReason(StrEnum):
    __slots__ = ()

    INACTIVITY = "inactivity_24_months"
    USER_REQUEST = "user_request"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    LEGAL_REQUIREMENT = "legal_requirement"


class AlertLevel(StrEnum):
    __slots__ = ()

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
