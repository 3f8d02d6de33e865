"""Reconciliation runs over the full contact population.

Three runs walk the CRM and apply the lifecycle rules:

* **Inactivity**: evaluate the inactivity ladder for every contact and
  schedule a purge for those that reach ``schedule_purge``.
* **Re-consent**: find contacts whose consent is missing, expired or
  about to expire and flag those not already flagged, in batches.
* **Purge**: archive every contact whose scheduled purge date has passed,
  writing the ``purged`` audit record before each archive.

Pages and contacts are processed sequentially.  One contact's failure is
captured in the run result and never stops the run; a failure to fetch a
page stops it with :class:`ReconciliationAborted` carrying what was done
so far.  Runs hold no lock of their own: at most one run per kind at a
time is the caller's job (see :class:`ComplianceScheduler`).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from typing import Final

import structlog

from consentflow.crm.base import (
    DEFAULT_PAGE_SIZE,
    ContactStore,
    chunked,
    iterate_search,
)
from consentflow.crm.timeline import (
    NullTimelineNotifier,
    TimelineEventKind,
    TimelineNotifier,
    notify_best_effort,
)
from consentflow.errors import (
    ConsentFlowError,
    ExternalServiceError,
    NotAuthenticated,
    ReconciliationAborted,
)
from consentflow.models.consent import AuditMetadata, ConsentPolicy, ConsentSnapshot
from consentflow.models.contact import BatchUpdateInput, Contact, ContactFilter, FilterOperator
from consentflow.models.enums import (
    ConsentAction,
    ConsentCategory,
    ConsentSource,
    ConsentStatus,
    InactivityAction,
    PurgeReason,
    ReconsentReason,
)
from consentflow.models.results import (
    InactivityCheckResult,
    InactivityRunResult,
    PurgeOutcome,
    PurgeReceipt,
    PurgeRunResult,
    PurgeStatistics,
    ReconsentCandidate,
    ReconsentRequest,
    ReconsentRunResult,
    ScheduledPurge,
)
from consentflow.services import contact_properties as props
from consentflow.services import date_rules
from consentflow.services.audit_trail import AuditTrail
from consentflow.services.clock import Clock
from consentflow.services.decision_engine import ConsentDecisionEngine

logger = structlog.get_logger(__name__)

_PURGE_HISTORY_DAYS: Final[int] = 30
_ALL_CATEGORIES: Final[str] = ", ".join(str(c) for c in ConsentCategory)


def prior_grant(snapshot: ConsentSnapshot) -> bool | None:
    """Tri-state previous value for a contact-wide audit record."""
    match snapshot.consent_status:
        case ConsentStatus.GRANTED:
            return True
        case ConsentStatus.REVOKED | ConsentStatus.EXPIRED:
            return False
        case _:
            return None


class ReconciliationRunner:
    """Applies the decision engine to every contact in the CRM.

    Parameters
    ----------
    store:
        The CRM contact store.
    engine:
        Lifecycle rules; its policy supplies every threshold.
    audit:
        Audit trail receiving every consent-state transition.
    clock:
        Source of "now"; read once at the start of each run.
    notifier:
        Optional timeline notifier, best-effort.
    page_size:
        Contacts per page when walking the population.
    """

    def __init__(
        self,
        store: ContactStore,
        engine: ConsentDecisionEngine,
        audit: AuditTrail,
        clock: Clock,
        *,
        notifier: TimelineNotifier | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._store = store
        self._engine = engine
        self._audit = audit
        self._clock = clock
        self._notifier = notifier or NullTimelineNotifier()
        self._page_size = page_size

    @property
    def _policy(self) -> ConsentPolicy:
        return self._engine.policy

    def _contacts(self) -> AsyncIterator[Contact]:
        return self._store.paginate_all(props.SNAPSHOT_FIELDS, self._page_size)

    @staticmethod
    def _aborted(run: str, exc: ExternalServiceError, partial: object) -> ReconciliationAborted:
        logger.error("reconciliation.aborted", run=run, error=str(exc))
        return ReconciliationAborted(
            f"{run} run aborted: {exc}",
            partial=partial,
            status_code=exc.status_code,
        )

    # ------------------------------------------------------------------
    # Inactivity
    # ------------------------------------------------------------------

    async def run_inactivity_check(self) -> InactivityRunResult:
        """Evaluate every contact and schedule purges for the long inactive."""
        now = self._clock.now()
        result = InactivityRunResult()
        logger.info("reconciliation.inactivity_started")

        try:
            async for contact in self._contacts():
                await self._check_inactivity(contact, now, result)
        except NotAuthenticated:
            raise
        except ExternalServiceError as exc:
            raise self._aborted("inactivity", exc, result) from exc

        logger.info(
            "reconciliation.inactivity_completed",
            total_checked=result.total_checked,
            inactive=result.inactive_count,
            scheduled_for_purge=result.scheduled_for_purge_count,
            failed=result.failed_count,
        )
        return result

    async def _check_inactivity(self, contact: Contact, now: datetime, result: InactivityRunResult) -> None:
        snapshot = props.snapshot_from_contact(contact)
        check = self._engine.decide(snapshot, now)
        result.total_checked += 1
        result.action_counts[check.recommended_action] += 1
        if check.is_inactive:
            result.inactive_count += 1

        if check.recommended_action == InactivityAction.SCHEDULE_PURGE:
            try:
                await self._schedule_inactive_purge(snapshot, now)
                result.scheduled_for_purge_count += 1
            except ConsentFlowError as exc:
                logger.warning("reconciliation.schedule_purge_failed", contact_id=snapshot.contact_id, error=str(exc))
                check = check.model_copy(update={"error": str(exc)})
                result.failed_count += 1

        result.results.append(check)

    async def _schedule_inactive_purge(self, snapshot: ConsentSnapshot, now: datetime) -> None:
        # An existing purge date is kept so repeated runs never postpone it.
        purge_date = snapshot.scheduled_purge_date or date_rules.add_days(now, self._policy.purge_grace_period_days)
        await self._store.update(
            snapshot.contact_id,
            {
                props.SCHEDULED_PURGE_DATE: date_rules.format_datetime(purge_date),
                props.RECONSENT_REQUIRED: props.YES,
            },
        )
        await self._audit.record(
            snapshot.contact_id,
            ConsentAction.EXPIRED,
            "inactivity",
            None,
            False,
            ConsentSource.API,
            AuditMetadata(
                notes=(
                    f"Scheduled for purge on {date_rules.format_datetime(purge_date)} due to "
                    f"{self._policy.inactivity_threshold_months} months of inactivity"
                )
            ),
        )
        await notify_best_effort(
            self._notifier,
            TimelineEventKind.PURGE_SCHEDULED,
            snapshot.contact_id,
            {"purge_date": purge_date.date().isoformat(), "reason": str(PurgeReason.INACTIVITY)},
        )

    async def contacts_approaching_inactivity(self, days_before: int = 30) -> list[InactivityCheckResult]:
        """Contacts within *days_before* days of the inactivity threshold."""
        now = self._clock.now()
        approaching: list[InactivityCheckResult] = []
        async for contact in self._contacts():
            check = self._engine.decide(props.snapshot_from_contact(contact), now)
            if self._engine.is_approaching_inactivity(check, days_before):
                approaching.append(check)
        return approaching

    # ------------------------------------------------------------------
    # Re-consent
    # ------------------------------------------------------------------

    async def contacts_requiring_reconsent(self) -> list[ReconsentCandidate]:
        now = self._clock.now()
        candidates: list[ReconsentCandidate] = []
        async for contact in self._contacts():
            snapshot = props.snapshot_from_contact(contact)
            check = self._engine.check_reconsent_required(snapshot, now)
            if check.required:
                candidates.append(
                    ReconsentCandidate(
                        contact_id=snapshot.contact_id,
                        email=snapshot.email,
                        consent_date=snapshot.consent_date,
                        expiry_date=check.expiry_date,
                        days_until_expiry=check.days_until_expiry,
                        already_flagged=snapshot.reconsent_required,
                    )
                )
        return candidates

    async def run_reconsent_check(self) -> ReconsentRunResult:
        """Flag every contact whose consent needs renewing."""
        now = self._clock.now()
        result = ReconsentRunResult()
        to_trigger: list[ConsentSnapshot] = []
        logger.info("reconciliation.reconsent_started")

        try:
            async for contact in self._contacts():
                snapshot = props.snapshot_from_contact(contact)
                result.total_checked += 1
                if not self._engine.check_reconsent_required(snapshot, now).required:
                    continue
                result.require_reconsent_count += 1
                if not snapshot.reconsent_required:
                    to_trigger.append(snapshot)
        except NotAuthenticated:
            raise
        except ExternalServiceError as exc:
            raise self._aborted("reconsent", exc, result) from exc

        by_id = {snapshot.contact_id: snapshot for snapshot in to_trigger}
        inputs = [
            BatchUpdateInput(
                id=snapshot.contact_id,
                properties={
                    props.RECONSENT_REQUIRED: props.YES,
                    props.CONSENT_STATUS: str(ConsentStatus.PENDING),
                },
            )
            for snapshot in to_trigger
        ]
        for chunk in chunked(inputs):
            try:
                await self._store.batch_update(chunk)
            except ConsentFlowError as exc:
                logger.warning("reconciliation.reconsent_batch_failed", size=len(chunk), error=str(exc))
                result.failed_count += len(chunk)
                result.errors.append(f"batch of {len(chunk)} failed: {exc}")
                continue
            for item in chunk:
                await self._record_reconsent(by_id[item.id], ReconsentReason.EXPIRY)
                result.triggered_count += 1
                result.triggered_contact_ids.append(item.id)

        logger.info(
            "reconciliation.reconsent_completed",
            total_checked=result.total_checked,
            require_reconsent=result.require_reconsent_count,
            triggered=result.triggered_count,
            failed=result.failed_count,
        )
        return result

    async def _record_reconsent(self, snapshot: ConsentSnapshot, reason: ReconsentReason) -> None:
        await self._audit.record(
            snapshot.contact_id,
            ConsentAction.EXPIRED,
            "all",
            prior_grant(snapshot),
            False,
            ConsentSource.API,
            AuditMetadata(notes=f"Re-consent required: {reason}"),
        )
        await notify_best_effort(
            self._notifier,
            TimelineEventKind.RECONSENT_REQUESTED,
            snapshot.contact_id,
            {"reason": str(reason), "categories": _ALL_CATEGORIES},
        )

    async def trigger_reconsent(
        self,
        contact_id: str,
        reason: ReconsentReason = ReconsentReason.MANUAL_REQUEST,
        categories: list[ConsentCategory] | None = None,
    ) -> ReconsentRequest:
        """Flag a single contact for re-consent regardless of expiry."""
        contact = await self._store.get_by_id(contact_id, props.SNAPSHOT_FIELDS)
        snapshot = props.snapshot_from_contact(contact)
        await self._store.update(
            contact_id,
            {props.RECONSENT_REQUIRED: props.YES, props.CONSENT_STATUS: str(ConsentStatus.PENDING)},
        )
        await self._record_reconsent(snapshot, reason)
        return ReconsentRequest(
            contact_id=contact_id,
            email=snapshot.email,
            categories=categories or list(ConsentCategory),
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    async def purge_contact(
        self,
        contact_id: str,
        reason: PurgeReason,
        retain_audit_log: bool = True,
    ) -> PurgeReceipt:
        """Archive one contact, writing its ``purged`` record first."""
        if retain_audit_log:
            await self._audit.record(
                contact_id,
                ConsentAction.PURGED,
                "all",
                None,
                False,
                ConsentSource.API,
                AuditMetadata(notes=f"Contact purged: {reason}"),
            )
        await self._store.archive(contact_id)
        logger.info("purge.contact_purged", contact_id=contact_id, reason=str(reason))
        return PurgeReceipt(
            contact_id=contact_id,
            reason=reason,
            timestamp=self._clock.now(),
            audit_retained=retain_audit_log,
        )

    async def batch_purge(
        self,
        contact_ids: list[str],
        reason: PurgeReason,
        retain_audit_log: bool = True,
    ) -> PurgeRunResult:
        result = PurgeRunResult()
        for contact_id in contact_ids:
            try:
                await self.purge_contact(contact_id, reason, retain_audit_log)
            except ConsentFlowError as exc:
                logger.warning("purge.contact_failed", contact_id=contact_id, error=str(exc))
                result.failed_count += 1
                result.results.append(PurgeOutcome(contact_id=contact_id, success=False, error=str(exc)))
                continue
            result.purged_count += 1
            result.results.append(PurgeOutcome(contact_id=contact_id, success=True))
        return result

    async def contacts_due_for_purge(self) -> list[Contact]:
        now = self._clock.now()
        due = ContactFilter(
            property_name=props.SCHEDULED_PURGE_DATE,
            operator=FilterOperator.LTE,
            value=date_rules.format_datetime(now),
        )
        return await iterate_search(self._store, [due], props.SNAPSHOT_FIELDS, self._page_size)

    async def run_purge_execution(self) -> PurgeRunResult:
        """Purge every contact whose scheduled purge date has passed.

        The due set is collected in full before the first archive so that
        archiving cannot shift the search pages underneath the walk.
        """
        logger.info("reconciliation.purge_started")
        try:
            due = await self.contacts_due_for_purge()
        except NotAuthenticated:
            raise
        except ExternalServiceError as exc:
            raise self._aborted("purge", exc, PurgeRunResult()) from exc

        result = await self.batch_purge([contact.id for contact in due], PurgeReason.INACTIVITY)
        logger.info(
            "reconciliation.purge_completed",
            purged=result.purged_count,
            failed=result.failed_count,
        )
        return result

    async def schedule_purge(
        self,
        contact_id: str,
        purge_date: datetime | None = None,
        reason: PurgeReason = PurgeReason.INACTIVITY,
    ) -> ScheduledPurge:
        when = purge_date or date_rules.add_days(self._clock.now(), self._policy.purge_grace_period_days)
        contact = await self._store.get_by_id(contact_id, [props.EMAIL])
        await self._store.update(contact_id, {props.SCHEDULED_PURGE_DATE: date_rules.format_datetime(when)})
        await notify_best_effort(
            self._notifier,
            TimelineEventKind.PURGE_SCHEDULED,
            contact_id,
            {"purge_date": when.date().isoformat(), "reason": str(reason)},
        )
        logger.info("purge.scheduled", contact_id=contact_id, purge_date=when.isoformat(), reason=str(reason))
        return ScheduledPurge(
            contact_id=contact_id,
            email=contact.prop(props.EMAIL),
            reason=reason,
            scheduled_date=when,
        )

    async def cancel_scheduled_purge(self, contact_id: str) -> None:
        await self._store.update(contact_id, {props.SCHEDULED_PURGE_DATE: ""})
        logger.info("purge.cancelled", contact_id=contact_id)

    async def purge_statistics(self) -> PurgeStatistics:
        now = self._clock.now()
        scheduled = await iterate_search(
            self._store,
            [ContactFilter(property_name=props.SCHEDULED_PURGE_DATE, operator=FilterOperator.HAS_PROPERTY)],
            [props.SCHEDULED_PURGE_DATE],
            self._page_size,
        )
        today = date_rules.start_of_day_utc(now)
        tomorrow = today + timedelta(days=1)
        due_today = 0
        for contact in scheduled:
            purge_date = date_rules.parse_datetime(contact.prop(props.SCHEDULED_PURGE_DATE))
            if purge_date is not None and today <= purge_date < tomorrow:
                due_today += 1

        window_start = now - timedelta(days=_PURGE_HISTORY_DAYS)
        purged = [
            r for r in self._audit.query_by_date_range(window_start, now) if r.action == ConsentAction.PURGED
        ]
        return PurgeStatistics(
            scheduled_for_purge=len(scheduled),
            due_today=due_today,
            purged_last_30_days=len(purged),
        )
