"""Consent domain models: snapshot, audit record, lifecycle policy."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from consentflow.models.enums import (
    CategoryConsent,
    ConsentAction,
    ConsentCategory,
    ConsentSource,
    ConsentStatus,
    LegalBasis,
)
from consentflow.services.date_rules import consent_expiry

if TYPE_CHECKING:
    from config.settings import Settings


class ConsentPolicy(BaseModel):
    """Configured thresholds that drive every lifecycle decision."""

    model_config = ConfigDict(frozen=True)

    consent_expiry_months: int = Field(default=24, ge=1)
    inactivity_threshold_months: int = Field(default=24, ge=3)
    purge_grace_period_days: int = Field(default=30, ge=0)
    reconsent_grace_days: int = Field(default=30, ge=0)
    audit_log_max_records: int = Field(default=100, ge=1)

    @property
    def inactivity_threshold_days(self) -> int:
        # Months x 30, not calendar months; see the action ladder.
        return self.inactivity_threshold_months * 30

    @classmethod
    def from_settings(cls, settings: Settings) -> ConsentPolicy:
        return cls(
            consent_expiry_months=settings.consent_expiry_months,
            inactivity_threshold_months=settings.inactivity_threshold_months,
            purge_grace_period_days=settings.purge_grace_period_days,
            reconsent_grace_days=settings.reconsent_grace_days,
            audit_log_max_records=settings.audit_log_max_records,
        )


def _pending_categories() -> dict[ConsentCategory, CategoryConsent]:
    return {category: CategoryConsent.PENDING for category in ConsentCategory}


class ConsentSnapshot(BaseModel):
    """Point-in-time consent state of one contact, read fresh from the CRM.

    ``consent_expiry_date`` is intentionally absent: it is always derived
    from ``consent_date`` and the configured expiry period via
    :meth:`consent_expiry_date`.
    """

    model_config = ConfigDict(frozen=True)

    contact_id: str
    email: str = ""
    legal_basis: LegalBasis = LegalBasis.NOT_APPLICABLE
    consent_status: ConsentStatus = ConsentStatus.UNKNOWN
    categories: dict[ConsentCategory, CategoryConsent] = Field(default_factory=_pending_categories)
    ccpa_opt_out: bool = False
    consent_date: datetime | None = None
    last_activity_date: datetime | None = None
    reconsent_required: bool = False
    scheduled_purge_date: datetime | None = None
    archived: bool = False

    def consent_expiry_date(self, expiry_months: int) -> datetime | None:
        if self.consent_date is None:
            return None
        return consent_expiry(self.consent_date, expiry_months)

    def category_state(self, category: ConsentCategory) -> CategoryConsent:
        return self.categories.get(category, CategoryConsent.PENDING)


class AuditRecord(BaseModel):
    """A single immutable consent audit trail record.

    Records are append-only: once created they are never modified or
    deleted.  ``previous_value`` is tri-state; ``None`` means the prior
    grant state was unknown or pending.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    contact_id: str
    action: ConsentAction
    category: str
    previous_value: bool | None = None
    new_value: bool
    source: ConsentSource
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ip_address: str | None = None
    user_agent: str | None = None
    notes: str | None = None


class AuditMetadata(BaseModel):
    """Optional request context attached to an audit record."""

    ip_address: str | None = None
    user_agent: str | None = None
    notes: str | None = None
