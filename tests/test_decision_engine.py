"""Tests for the consent lifecycle decision engine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from consentflow.models.consent import ConsentPolicy, ConsentSnapshot
from consentflow.models.enums import (
    ConsentStatus,
    InactivityAction,
    LifecycleState,
    ReconsentReason,
)
from consentflow.services.decision_engine import ConsentDecisionEngine, determine_action

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)
RECENT = NOW - timedelta(days=10)


@pytest.fixture
def engine() -> ConsentDecisionEngine:
    return ConsentDecisionEngine(ConsentPolicy())


def _snapshot(**overrides) -> ConsentSnapshot:
    values = {"contact_id": "c1", "email": "ada@example.com", "last_activity_date": RECENT}
    values.update(overrides)
    return ConsentSnapshot(**values)


# -----------------------------------------------------------------------
# Action ladder
# -----------------------------------------------------------------------


class TestDetermineAction:
    def test_never_active_schedules_purge(self) -> None:
        assert determine_action(None, True, 720) == InactivityAction.SCHEDULE_PURGE

    def test_past_threshold_schedules_purge(self) -> None:
        assert determine_action(721, True, 720) == InactivityAction.SCHEDULE_PURGE

    def test_700_days_against_720_flags_for_review(self) -> None:
        assert determine_action(700, True, 720) == InactivityAction.FLAG_FOR_REVIEW

    def test_threshold_itself_flags_for_review(self) -> None:
        assert determine_action(720, True, 720) == InactivityAction.FLAG_FOR_REVIEW

    def test_reminder_band(self) -> None:
        assert determine_action(670, True, 720) == InactivityAction.SEND_REMINDER

    def test_below_reminder_band_is_no_action(self) -> None:
        assert determine_action(650, True, 720) == InactivityAction.NO_ACTION

    def test_active_contact_is_never_escalated(self) -> None:
        assert determine_action(5000, False, 720) == InactivityAction.NO_ACTION

    def test_escalation_is_monotonic(self) -> None:
        order = list(InactivityAction)
        previous = 0
        for days in range(0, 800):
            rank = order.index(determine_action(days, True, 720))
            assert rank >= previous, f"escalation dropped at {days} days"
            previous = rank


# -----------------------------------------------------------------------
# decide()
# -----------------------------------------------------------------------


class TestDecide:
    def test_null_activity_is_inactive_and_scheduled_for_purge(self, engine: ConsentDecisionEngine) -> None:
        result = engine.decide(_snapshot(last_activity_date=None), NOW)
        assert result.is_inactive is True
        assert result.days_since_activity is None
        assert result.recommended_action == InactivityAction.SCHEDULE_PURGE

    def test_long_inactive_contact(self, engine: ConsentDecisionEngine) -> None:
        result = engine.decide(_snapshot(last_activity_date=NOW - timedelta(days=800)), NOW)
        assert result.is_inactive is True
        assert result.days_since_activity == 800
        assert result.recommended_action == InactivityAction.SCHEDULE_PURGE

    def test_recently_active_contact(self, engine: ConsentDecisionEngine) -> None:
        result = engine.decide(_snapshot(), NOW)
        assert result.is_inactive is False
        assert result.days_since_activity == 10
        assert result.recommended_action == InactivityAction.NO_ACTION
        assert result.email == "ada@example.com"

    def test_approaching_inactivity_window(self, engine: ConsentDecisionEngine) -> None:
        near = engine.decide(_snapshot(last_activity_date=NOW - timedelta(days=700)), NOW)
        far = engine.decide(_snapshot(last_activity_date=NOW - timedelta(days=650)), NOW)
        never = engine.decide(_snapshot(last_activity_date=None), NOW)
        assert engine.is_approaching_inactivity(near, 30) is True
        assert engine.is_approaching_inactivity(far, 30) is False
        assert engine.is_approaching_inactivity(never, 30) is False


# -----------------------------------------------------------------------
# Re-consent
# -----------------------------------------------------------------------


class TestCheckReconsentRequired:
    def test_no_consent_date_requires_reconsent(self, engine: ConsentDecisionEngine) -> None:
        check = engine.check_reconsent_required(_snapshot(), NOW)
        assert check.required is True
        assert check.reason == ReconsentReason.EXPIRY
        assert check.expiry_date is None

    def test_consent_25_months_old_requires_reconsent(self, engine: ConsentDecisionEngine) -> None:
        check = engine.check_reconsent_required(_snapshot(consent_date=datetime(2023, 5, 15, tzinfo=UTC)), NOW)
        assert check.required is True
        assert check.expiry_date == datetime(2025, 5, 15, tzinfo=UTC)
        assert check.days_until_expiry == 0, "days until expiry is floored at zero once expired"

    def test_recent_consent_does_not(self, engine: ConsentDecisionEngine) -> None:
        check = engine.check_reconsent_required(_snapshot(consent_date=datetime(2025, 5, 15, 12, 0, tzinfo=UTC)), NOW)
        assert check.required is False
        assert check.reason is None
        assert check.days_until_expiry == 699

    def test_shorter_expiry_policy(self) -> None:
        engine = ConsentDecisionEngine(ConsentPolicy(consent_expiry_months=12))
        check = engine.check_reconsent_required(_snapshot(consent_date=datetime(2024, 6, 1, tzinfo=UTC)), NOW)
        assert check.required is True


# -----------------------------------------------------------------------
# Lifecycle state
# -----------------------------------------------------------------------


class TestLifecycleState:
    def test_archived_is_purged(self, engine: ConsentDecisionEngine) -> None:
        assert engine.lifecycle_state(_snapshot(archived=True), NOW) == LifecycleState.PURGED

    def test_scheduled_purge_wins_over_expiry(self, engine: ConsentDecisionEngine) -> None:
        snapshot = _snapshot(
            scheduled_purge_date=NOW + timedelta(days=5),
            consent_status=ConsentStatus.GRANTED,
            consent_date=datetime(2022, 1, 1, tzinfo=UTC),
        )
        assert engine.lifecycle_state(snapshot, NOW) == LifecycleState.PURGE_SCHEDULED

    def test_never_active_is_inactive_flagged(self, engine: ConsentDecisionEngine) -> None:
        assert engine.lifecycle_state(_snapshot(last_activity_date=None), NOW) == LifecycleState.INACTIVE_FLAGGED

    def test_no_consent(self, engine: ConsentDecisionEngine) -> None:
        assert engine.lifecycle_state(_snapshot(), NOW) == LifecycleState.NO_CONSENT

    def test_revoked_is_no_consent(self, engine: ConsentDecisionEngine) -> None:
        snapshot = _snapshot(consent_status=ConsentStatus.REVOKED, consent_date=NOW - timedelta(days=30))
        assert engine.lifecycle_state(snapshot, NOW) == LifecycleState.NO_CONSENT

    def test_active(self, engine: ConsentDecisionEngine) -> None:
        snapshot = _snapshot(consent_status=ConsentStatus.GRANTED, consent_date=NOW - timedelta(days=30))
        assert engine.lifecycle_state(snapshot, NOW) == LifecycleState.ACTIVE

    def test_expiring_soon(self, engine: ConsentDecisionEngine) -> None:
        snapshot = _snapshot(consent_status=ConsentStatus.GRANTED, consent_date=datetime(2023, 7, 1, tzinfo=UTC))
        assert engine.lifecycle_state(snapshot, NOW) == LifecycleState.EXPIRING_SOON

    def test_expired_requires_reconsent(self, engine: ConsentDecisionEngine) -> None:
        snapshot = _snapshot(consent_status=ConsentStatus.GRANTED, consent_date=datetime(2023, 5, 15, tzinfo=UTC))
        assert engine.lifecycle_state(snapshot, NOW) == LifecycleState.RECONSENT_REQUIRED

    def test_flag_requires_reconsent(self, engine: ConsentDecisionEngine) -> None:
        snapshot = _snapshot(
            consent_status=ConsentStatus.PENDING,
            consent_date=NOW - timedelta(days=30),
            reconsent_required=True,
        )
        assert engine.lifecycle_state(snapshot, NOW) == LifecycleState.RECONSENT_REQUIRED

    def test_snapshot_expiry_is_derived(self) -> None:
        snapshot = _snapshot(consent_date=datetime(2023, 1, 15, tzinfo=UTC))
        assert snapshot.consent_expiry_date(24) == datetime(2025, 1, 15, tzinfo=UTC)
        assert _snapshot().consent_expiry_date(24) is None
