"""Public entry points of the consent lifecycle.

:class:`ConsentService` composes the contact store, audit trail, decision
engine, reconciliation runner and metrics into the operations the HTTP
layer (or any other caller) invokes.  Inputs are validated here; every
failure surfaces as a :class:`~consentflow.errors.ConsentFlowError`
subclass.

Consent changes follow one order: read the contact (so a missing contact
fails before anything is written), write the CRM, then append the audit
records, then send timeline events on a best-effort basis.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Final

import structlog

from consentflow.crm.base import DEFAULT_PAGE_SIZE, ContactStore
from consentflow.crm.timeline import (
    NullTimelineNotifier,
    TimelineEventKind,
    TimelineNotifier,
    notify_best_effort,
)
from consentflow.errors import NotFound, ValidationError
from consentflow.models.consent import AuditMetadata, AuditRecord, ConsentSnapshot
from consentflow.models.enums import (
    CategoryConsent,
    ConsentAction,
    ConsentCategory,
    ConsentSource,
    ConsentStatus,
    LegalBasis,
    PurgeReason,
    ReconsentReason,
)
from consentflow.models.results import (
    AuditComplianceReport,
    ComplianceAlert,
    ConsentChangeResult,
    ConsentEvent,
    ConsentStatusView,
    ContactAuditView,
    DashboardData,
    DeletionRequestResult,
    InactivityCheckResult,
    InactivityRunResult,
    PropertyInitResult,
    PurgeReceipt,
    PurgeRunResult,
    PurgeStatistics,
    ReconsentCandidate,
    ReconsentRequest,
    ReconsentRunResult,
    ScheduledPurge,
    SummaryStats,
)
from consentflow.services import contact_properties as props
from consentflow.services import date_rules
from consentflow.services.audit_trail import AuditTrail
from consentflow.services.clock import Clock
from consentflow.services.compliance_metrics import ComplianceMetrics
from consentflow.services.decision_engine import ConsentDecisionEngine
from consentflow.services.reconciliation import ReconciliationRunner

logger = structlog.get_logger(__name__)

_DEFAULT_REPORT_DAYS: Final[int] = 30
_RECENT_EVENTS: Final[int] = 10


def _previous_value(state: CategoryConsent) -> bool | None:
    match state:
        case CategoryConsent.GRANTED:
            return True
        case CategoryConsent.NOT_GRANTED:
            return False
        case CategoryConsent.PENDING:
            return None


def _require_id(contact_id: str) -> str:
    cleaned = (contact_id or "").strip()
    if not cleaned:
        raise ValidationError("contact_id", "contact id is required")
    return cleaned


def _require_email(email: str) -> str:
    cleaned = (email or "").strip().lower()
    local, _, domain = cleaned.partition("@")
    if not local or "." not in domain:
        raise ValidationError("email", "a valid email address is required")
    return cleaned


def _categories(categories: Sequence[ConsentCategory] | None) -> list[ConsentCategory]:
    if categories is None:
        return list(ConsentCategory)
    if not categories:
        raise ValidationError("categories", "at least one category is required")
    try:
        # Order-preserving de-duplication.
        return list(dict.fromkeys(ConsentCategory(c) for c in categories))
    except ValueError as exc:
        raise ValidationError("categories", str(exc)) from exc


class ConsentService:
    """Facade over the consent lifecycle core.

    Parameters
    ----------
    store:
        CRM contact store.
    audit:
        Consent audit trail.
    engine:
        Lifecycle decision rules (and their policy).
    runner:
        Reconciliation runner for bulk runs and purge operations.
    metrics:
        Compliance metrics aggregator.
    clock:
        Source of "now".
    notifier:
        Optional timeline notifier.
    """

    def __init__(
        self,
        store: ContactStore,
        audit: AuditTrail,
        engine: ConsentDecisionEngine,
        runner: ReconciliationRunner,
        metrics: ComplianceMetrics,
        clock: Clock,
        *,
        notifier: TimelineNotifier | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._store = store
        self._audit = audit
        self._engine = engine
        self._runner = runner
        self._metrics = metrics
        self._clock = clock
        self._notifier = notifier or NullTimelineNotifier()
        self._page_size = page_size

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    async def _snapshot(self, contact_id: str) -> ConsentSnapshot:
        contact = await self._store.get_by_id(contact_id, props.SNAPSHOT_FIELDS)
        return props.snapshot_from_contact(contact)

    # ------------------------------------------------------------------
    # Property schema
    # ------------------------------------------------------------------

    async def initialize_properties(self) -> PropertyInitResult:
        """Create the consent property group and any missing properties."""
        present = await self._store.list_property_names()
        await self._store.create_property_group(props.PROPERTY_GROUP, props.PROPERTY_GROUP_LABEL)

        result = PropertyInitResult()
        for definition in props.PROPERTY_DEFINITIONS:
            name = definition["name"]
            if name in present:
                result.existing.append(name)
                continue
            await self._store.create_property(definition)
            result.created.append(name)

        logger.info("consent.properties_initialized", created=len(result.created), existing=len(result.existing))
        return result

    # ------------------------------------------------------------------
    # Per-contact consent
    # ------------------------------------------------------------------

    async def get_consent_status(self, contact_id: str) -> ConsentStatusView:
        contact_id = _require_id(contact_id)
        snapshot = await self._snapshot(contact_id)
        now = self._clock.now()
        check = self._engine.check_reconsent_required(snapshot, now)
        return ConsentStatusView(
            contact_id=contact_id,
            email=snapshot.email,
            consent_status=str(snapshot.consent_status),
            legal_basis=snapshot.legal_basis,
            consent_date=snapshot.consent_date,
            expiry_date=snapshot.consent_expiry_date(self._engine.policy.consent_expiry_months),
            categories={c: str(snapshot.category_state(c)) for c in ConsentCategory},
            ccpa_opt_out=snapshot.ccpa_opt_out,
            lifecycle_state=self._engine.lifecycle_state(snapshot, now),
            reconsent_required=snapshot.reconsent_required or check.required,
            days_until_expiry=check.days_until_expiry,
            audit_summary=self._audit.summarize(contact_id),
        )

    async def grant_consent(
        self,
        contact_id: str,
        categories: Sequence[ConsentCategory] | None = None,
        legal_basis: LegalBasis = LegalBasis.CONSENT,
        source: ConsentSource = ConsentSource.API,
        metadata: AuditMetadata | None = None,
    ) -> ConsentChangeResult:
        """Grant consent for *categories* and restart the expiry clock.

        Sets the consent date to now, the expiry date to now plus the
        configured expiry period, clears any re-consent flag and any
        scheduled purge, and writes one ``granted`` record per category.
        """
        contact_id = _require_id(contact_id)
        wanted = _categories(categories)
        snapshot = await self._snapshot(contact_id)

        now = self._clock.now()
        expiry = date_rules.consent_expiry(now, self._engine.policy.consent_expiry_months)
        update = {
            props.CONSENT_STATUS: str(ConsentStatus.GRANTED),
            props.LEGAL_BASIS: str(legal_basis),
            props.CONSENT_DATE: date_rules.format_datetime(now),
            props.CONSENT_EXPIRY_DATE: date_rules.format_datetime(expiry),
            props.CONSENT_SOURCE: str(source),
            props.RECONSENT_REQUIRED: props.NO,
            props.SCHEDULED_PURGE_DATE: "",
        }
        for category in wanted:
            update[props.category_property(category)] = str(CategoryConsent.GRANTED)
        await self._store.update(contact_id, update)

        records: list[AuditRecord] = []
        for category in wanted:
            records.append(
                await self._audit.record(
                    contact_id,
                    ConsentAction.GRANTED,
                    str(category),
                    _previous_value(snapshot.category_state(category)),
                    True,
                    source,
                    metadata,
                )
            )
            await notify_best_effort(
                self._notifier,
                TimelineEventKind.CONSENT_GRANTED,
                contact_id,
                {"category": str(category), "source": str(source), "legal_basis": str(legal_basis)},
            )

        logger.info("consent.granted", contact_id=contact_id, categories=[str(c) for c in wanted])
        return ConsentChangeResult(
            contact_id=contact_id,
            action=ConsentAction.GRANTED,
            categories=[str(c) for c in wanted],
            expiry_date=expiry,
            audit_record_ids=[r.id for r in records],
        )

    async def revoke_consent(
        self,
        contact_id: str,
        categories: Sequence[ConsentCategory] | None = None,
        source: ConsentSource = ConsentSource.API,
        metadata: AuditMetadata | None = None,
    ) -> ConsentChangeResult:
        contact_id = _require_id(contact_id)
        wanted = _categories(categories)
        snapshot = await self._snapshot(contact_id)

        update = {props.CONSENT_STATUS: str(ConsentStatus.REVOKED)}
        for category in wanted:
            update[props.category_property(category)] = str(CategoryConsent.NOT_GRANTED)
        await self._store.update(contact_id, update)

        records: list[AuditRecord] = []
        for category in wanted:
            records.append(
                await self._audit.record(
                    contact_id,
                    ConsentAction.REVOKED,
                    str(category),
                    _previous_value(snapshot.category_state(category)),
                    False,
                    source,
                    metadata,
                )
            )
            await notify_best_effort(
                self._notifier,
                TimelineEventKind.CONSENT_REVOKED,
                contact_id,
                {"category": str(category), "source": str(source)},
            )

        logger.info("consent.revoked", contact_id=contact_id, categories=[str(c) for c in wanted])
        return ConsentChangeResult(
            contact_id=contact_id,
            action=ConsentAction.REVOKED,
            categories=[str(c) for c in wanted],
            audit_record_ids=[r.id for r in records],
        )

    async def ccpa_opt_out(
        self,
        contact_id: str,
        source: ConsentSource = ConsentSource.API,
        metadata: AuditMetadata | None = None,
    ) -> ConsentChangeResult:
        """Record a CCPA "Do Not Sell" opt-out."""
        contact_id = _require_id(contact_id)
        snapshot = await self._snapshot(contact_id)
        await self._store.update(contact_id, {props.CCPA_OPT_OUT: props.YES})

        meta = metadata or AuditMetadata()
        record = await self._audit.record(
            contact_id,
            ConsentAction.REVOKED,
            "ccpa_sale",
            not snapshot.ccpa_opt_out,
            False,
            source,
            meta.model_copy(update={"notes": meta.notes or "CCPA Do Not Sell opt-out"}),
        )
        await notify_best_effort(self._notifier, TimelineEventKind.CCPA_OPTOUT, contact_id)

        logger.info("consent.ccpa_opt_out", contact_id=contact_id)
        return ConsentChangeResult(
            contact_id=contact_id,
            action=ConsentAction.REVOKED,
            categories=["ccpa_sale"],
            audit_record_ids=[record.id],
        )

    async def process_reconsent(
        self,
        contact_id: str,
        consent_granted: bool,
        categories: dict[ConsentCategory, bool],
        source: ConsentSource = ConsentSource.WEB_FORM,
    ) -> ConsentChangeResult:
        """Apply a contact's answer to a re-consent request."""
        contact_id = _require_id(contact_id)
        if not categories:
            raise ValidationError("categories", "at least one category answer is required")
        answers = dict(zip(_categories(list(categories)), categories.values(), strict=True))
        snapshot = await self._snapshot(contact_id)

        now = self._clock.now()
        expiry = date_rules.consent_expiry(now, self._engine.policy.consent_expiry_months)
        update = {
            props.RECONSENT_REQUIRED: props.NO,
            props.CONSENT_DATE: date_rules.format_datetime(now),
            props.CONSENT_EXPIRY_DATE: date_rules.format_datetime(expiry),
            props.CONSENT_STATUS: str(ConsentStatus.GRANTED if consent_granted else ConsentStatus.REVOKED),
            props.CONSENT_SOURCE: str(source),
        }
        if consent_granted:
            update[props.SCHEDULED_PURGE_DATE] = ""
        for category, granted in answers.items():
            state = CategoryConsent.GRANTED if granted else CategoryConsent.NOT_GRANTED
            update[props.category_property(category)] = str(state)
        await self._store.update(contact_id, update)

        records: list[AuditRecord] = []
        for category, granted in answers.items():
            records.append(
                await self._audit.record(
                    contact_id,
                    ConsentAction.GRANTED if granted else ConsentAction.REVOKED,
                    str(category),
                    _previous_value(snapshot.category_state(category)),
                    granted,
                    source,
                )
            )
        if consent_granted:
            await notify_best_effort(
                self._notifier,
                TimelineEventKind.CONSENT_RENEWED,
                contact_id,
                {"expiry_date": expiry.date().isoformat(), "categories": ", ".join(str(c) for c in answers)},
            )

        logger.info("consent.reconsent_processed", contact_id=contact_id, granted=consent_granted)
        return ConsentChangeResult(
            contact_id=contact_id,
            action=ConsentAction.RENEWED if consent_granted else ConsentAction.REVOKED,
            categories=[str(c) for c in answers],
            expiry_date=expiry,
            audit_record_ids=[r.id for r in records],
        )

    async def record_activity(self, contact_id: str) -> datetime:
        contact_id = _require_id(contact_id)
        now = self._clock.now()
        await self._store.update(contact_id, {props.LAST_ACTIVITY_DATE: date_rules.format_datetime(now)})
        return now

    # ------------------------------------------------------------------
    # Reconciliation and purge
    # ------------------------------------------------------------------

    async def run_inactivity_check(self) -> InactivityRunResult:
        return await self._runner.run_inactivity_check()

    async def run_reconsent_check(self) -> ReconsentRunResult:
        return await self._runner.run_reconsent_check()

    async def run_purge_execution(self) -> PurgeRunResult:
        return await self._runner.run_purge_execution()

    async def contacts_approaching_inactivity(self, days_before: int = 30) -> list[InactivityCheckResult]:
        if days_before < 1:
            raise ValidationError("days", "must be a positive number of days")
        return await self._runner.contacts_approaching_inactivity(days_before)

    async def contacts_requiring_reconsent(self) -> list[ReconsentCandidate]:
        return await self._runner.contacts_requiring_reconsent()

    async def trigger_reconsent(
        self,
        contact_id: str,
        reason: ReconsentReason = ReconsentReason.MANUAL_REQUEST,
        categories: Sequence[ConsentCategory] | None = None,
    ) -> ReconsentRequest:
        return await self._runner.trigger_reconsent(_require_id(contact_id), reason, _categories(categories))

    async def schedule_purge(
        self,
        contact_id: str,
        purge_date: datetime | None = None,
        reason: PurgeReason = PurgeReason.INACTIVITY,
    ) -> ScheduledPurge:
        return await self._runner.schedule_purge(_require_id(contact_id), purge_date, reason)

    async def cancel_scheduled_purge(self, contact_id: str) -> None:
        await self._runner.cancel_scheduled_purge(_require_id(contact_id))

    async def purge_statistics(self) -> PurgeStatistics:
        return await self._runner.purge_statistics()

    async def _deletion_request(self, email: str, regulation: str) -> DeletionRequestResult:
        email = _require_email(email)
        contact = await self._store.get_by_email(email, [props.EMAIL])
        if contact is None:
            raise NotFound("contact", email)
        receipt: PurgeReceipt = await self._runner.purge_contact(contact.id, PurgeReason.USER_REQUEST)
        logger.info("purge.deletion_request_completed", contact_id=contact.id, regulation=regulation)
        return DeletionRequestResult(contact_id=contact.id, email=email, regulation=regulation, receipt=receipt)

    async def gdpr_deletion_request(self, email: str) -> DeletionRequestResult:
        """Erase a contact on request (GDPR Art. 17)."""
        return await self._deletion_request(email, "gdpr")

    async def ccpa_deletion_request(self, email: str) -> DeletionRequestResult:
        return await self._deletion_request(email, "ccpa")

    # ------------------------------------------------------------------
    # Audit and reporting
    # ------------------------------------------------------------------

    def get_audit(self, contact_id: str) -> ContactAuditView:
        contact_id = _require_id(contact_id)
        return ContactAuditView(
            contact_id=contact_id,
            records=self._audit.query_by_contact(contact_id),
            summary=self._audit.summarize(contact_id),
        )

    def export_audit(self, contact_id: str | None = None) -> str:
        return self._audit.export_json(contact_id)

    def get_compliance_report(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AuditComplianceReport:
        """Audit counts over ``[start, end]``; defaults to the last 30 days."""
        end = date_rules.ensure_utc(end) if end else self._clock.now()
        start = date_rules.ensure_utc(start) if start else end - timedelta(days=_DEFAULT_REPORT_DAYS)
        if start > end:
            raise ValidationError("start", "start must not be after end")
        return self._audit.compliance_report(start, end)

    async def get_dashboard(self) -> DashboardData:
        now = self._clock.now()
        snapshots = [
            props.snapshot_from_contact(contact)
            async for contact in self._store.paginate_all(props.SNAPSHOT_FIELDS, self._page_size)
        ]
        return DashboardData(
            metrics=self._metrics.aggregate(snapshots, now),
            recent_consent_events=[
                ConsentEvent(contact_id=r.contact_id, action=r.action, category=r.category, timestamp=r.timestamp)
                for r in self._audit.recent(_RECENT_EVENTS)
            ],
            generated_at=now,
        )

    async def get_summary_stats(self) -> SummaryStats:
        dashboard = await self.get_dashboard()
        return self._metrics.summary_stats(dashboard.metrics)

    async def get_alerts(self) -> list[ComplianceAlert]:
        dashboard = await self.get_dashboard()
        return self._metrics.alerts(dashboard.metrics)
