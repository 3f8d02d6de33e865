"""Consent lifecycle decision engine.

Given a contact's :class:`ConsentSnapshot` and the current instant, decides
whether the contact is inactive, what escalation the inactivity ladder
recommends, whether re-consent is required, and which lifecycle state the
contact is in.  The engine holds no mutable state: every answer is a pure
function of (snapshot, now, policy).

Inactivity ladder
-----------------
With ``threshold_days = inactivity_threshold_months * 30``, evaluated in
strict priority order:

1. not inactive                                -> ``no_action``
2. days since activity  > threshold_days       -> ``schedule_purge``
3. days since activity  > threshold_days - 30  -> ``flag_for_review``
4. days since activity  > threshold_days - 60  -> ``send_reminder``
5. otherwise                                   -> ``no_action``

A contact with no recorded activity is treated as infinitely inactive.
The months x 30 approximation is intentional; dashboards and reports
compare against these exact day counts.
"""

from __future__ import annotations

from datetime import datetime

from consentflow.models.consent import ConsentPolicy, ConsentSnapshot
from consentflow.models.enums import (
    ConsentStatus,
    InactivityAction,
    LifecycleState,
    ReconsentReason,
)
from consentflow.models.results import InactivityCheckResult, ReconsentCheck
from consentflow.services import date_rules

_REVIEW_BAND_DAYS = 30
_REMINDER_BAND_DAYS = 60


def determine_action(
    days_since_activity: int | None,
    is_inactive: bool,
    threshold_days: int,
) -> InactivityAction:
    """Map inactivity onto exactly one escalation step.

    ``days_since_activity=None`` means "never active" and always escalates
    to ``schedule_purge`` once the contact is inactive.
    """
    if not is_inactive:
        return InactivityAction.NO_ACTION
    if days_since_activity is None or days_since_activity > threshold_days:
        return InactivityAction.SCHEDULE_PURGE
    if days_since_activity > threshold_days - _REVIEW_BAND_DAYS:
        return InactivityAction.FLAG_FOR_REVIEW
    if days_since_activity > threshold_days - _REMINDER_BAND_DAYS:
        return InactivityAction.SEND_REMINDER
    return InactivityAction.NO_ACTION


class ConsentDecisionEngine:
    """Stateless lifecycle rules bound to one :class:`ConsentPolicy`.

    Parameters
    ----------
    policy:
        Configured expiry, inactivity and grace thresholds.
    """

    __slots__ = ("_policy",)

    def __init__(self, policy: ConsentPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> ConsentPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Inactivity
    # ------------------------------------------------------------------

    def decide(self, snapshot: ConsentSnapshot, now: datetime) -> InactivityCheckResult:
        """Evaluate the inactivity ladder for one contact."""
        last_activity = snapshot.last_activity_date
        days_since_activity = (
            date_rules.days_between(last_activity, now) if last_activity is not None else None
        )
        inactive = date_rules.is_inactive(
            last_activity, self._policy.inactivity_threshold_months, now
        )
        return InactivityCheckResult(
            contact_id=snapshot.contact_id,
            email=snapshot.email,
            last_activity_date=last_activity,
            days_since_activity=days_since_activity,
            is_inactive=inactive,
            recommended_action=determine_action(
                days_since_activity, inactive, self._policy.inactivity_threshold_days
            ),
        )

    def is_approaching_inactivity(self, result: InactivityCheckResult, days_before: int) -> bool:
        """True if the contact sits within *days_before* of the threshold."""
        if result.days_since_activity is None:
            return False
        threshold_days = self._policy.inactivity_threshold_days
        return threshold_days - days_before <= result.days_since_activity < threshold_days

    # ------------------------------------------------------------------
    # Re-consent
    # ------------------------------------------------------------------

    def check_reconsent_required(self, snapshot: ConsentSnapshot, now: datetime) -> ReconsentCheck:
        """Decide whether the contact's consent must be renewed."""
        consent_date = snapshot.consent_date
        if consent_date is None:
            return ReconsentCheck(required=True, reason=ReconsentReason.EXPIRY)

        expiry_date = date_rules.consent_expiry(consent_date, self._policy.consent_expiry_months)
        expiring = date_rules.is_consent_expiring(
            consent_date,
            self._policy.consent_expiry_months,
            self._policy.reconsent_grace_days,
            now,
        )
        return ReconsentCheck(
            required=expiring,
            reason=ReconsentReason.EXPIRY if expiring else None,
            expiry_date=expiry_date,
            days_until_expiry=max(date_rules.days_until(expiry_date, now), 0),
        )

    # ------------------------------------------------------------------
    # Lifecycle state
    # ------------------------------------------------------------------

    def lifecycle_state(self, snapshot: ConsentSnapshot, now: datetime) -> LifecycleState:
        """Reconstruct the contact's lifecycle state from its snapshot.

        Later lifecycle stages win: a purge-scheduled contact is reported
        as such even if its consent has also lapsed.
        """
        if snapshot.archived:
            return LifecycleState.PURGED
        if snapshot.scheduled_purge_date is not None:
            return LifecycleState.PURGE_SCHEDULED

        inactivity = self.decide(snapshot, now)
        if inactivity.recommended_action in (
            InactivityAction.FLAG_FOR_REVIEW,
            InactivityAction.SCHEDULE_PURGE,
        ):
            return LifecycleState.INACTIVE_FLAGGED

        if snapshot.consent_date is None or snapshot.consent_status in (
            ConsentStatus.REVOKED,
            ConsentStatus.UNKNOWN,
        ):
            return LifecycleState.NO_CONSENT

        expiry_date = date_rules.consent_expiry(snapshot.consent_date, self._policy.consent_expiry_months)
        if snapshot.reconsent_required or expiry_date <= now:
            return LifecycleState.RECONSENT_REQUIRED
        if self.check_reconsent_required(snapshot, now).required:
            return LifecycleState.EXPIRING_SOON
        return LifecycleState.ACTIVE
