"""Compliance metrics over a materialised contact population.

Pure aggregation: callers fetch the snapshots, this module counts them.
Every percentage is in ``[0, 100]`` and is ``0`` for an empty population.

Compliance score
----------------
A weighted blend of four percentages::

    0.40 * consent_coverage
  + 0.25 * (100 - reconsent_percentage)
  + 0.20 * (100 - inactive_percentage)
  + 0.15 * (100 - purge_pending_percentage)
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from typing import Final

from consentflow.models.consent import ConsentSnapshot
from consentflow.models.enums import (
    AlertLevel,
    CategoryConsent,
    ConsentCategory,
    ConsentStatus,
    LifecycleState,
)
from consentflow.models.results import (
    CategoryStats,
    ComplianceAlert,
    ComplianceMetricsReport,
    LegalBasisStats,
    SummaryStats,
)
from consentflow.services.decision_engine import ConsentDecisionEngine

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_WEIGHT_COVERAGE: Final[float] = 0.40
_WEIGHT_RECONSENT: Final[float] = 0.25
_WEIGHT_INACTIVE: Final[float] = 0.20
_WEIGHT_PURGE: Final[float] = 0.15

# Below this consent coverage an informational alert is raised.
_COVERAGE_ALERT_THRESHOLD: Final[float] = 80.0


def percentage(part: int, total: int) -> float:
    return (part / total) * 100 if total else 0.0


def compliance_score(
    consent_coverage: float,
    reconsent_percentage: float,
    inactive_percentage: float,
    purge_pending_percentage: float,
) -> float:
    return (
        _WEIGHT_COVERAGE * consent_coverage
        + _WEIGHT_RECONSENT * (100 - reconsent_percentage)
        + _WEIGHT_INACTIVE * (100 - inactive_percentage)
        + _WEIGHT_PURGE * (100 - purge_pending_percentage)
    )


class ComplianceMetrics:
    """Aggregates consent snapshots into a :class:`ComplianceMetricsReport`.

    Parameters
    ----------
    engine:
        Supplies the re-consent, inactivity and lifecycle rules so the
        counts agree with what the reconciliation runs would decide.
    """

    __slots__ = ("_engine",)

    def __init__(self, engine: ConsentDecisionEngine) -> None:
        self._engine = engine

    def aggregate(self, snapshots: Iterable[ConsentSnapshot], now: datetime) -> ComplianceMetricsReport:
        total = 0
        with_consent = 0
        without_consent = 0
        requiring_reconsent = 0
        inactive = 0
        scheduled_for_purge = 0
        categories: dict[ConsentCategory, Counter[CategoryConsent]] = {c: Counter() for c in ConsentCategory}
        legal_bases: Counter = Counter()
        lifecycle: Counter[LifecycleState] = Counter()

        for snapshot in snapshots:
            total += 1
            if snapshot.consent_status == ConsentStatus.GRANTED:
                with_consent += 1
            elif snapshot.consent_status == ConsentStatus.UNKNOWN:
                without_consent += 1

            if snapshot.reconsent_required or self._engine.check_reconsent_required(snapshot, now).required:
                requiring_reconsent += 1
            if self._engine.decide(snapshot, now).is_inactive:
                inactive += 1
            if snapshot.scheduled_purge_date is not None:
                scheduled_for_purge += 1

            for category in ConsentCategory:
                categories[category][snapshot.category_state(category)] += 1
            legal_bases[snapshot.legal_basis] += 1
            lifecycle[self._engine.lifecycle_state(snapshot, now)] += 1

        coverage = percentage(with_consent, total)
        reconsent_pct = percentage(requiring_reconsent, total)
        inactive_pct = percentage(inactive, total)
        purge_pct = percentage(scheduled_for_purge, total)

        return ComplianceMetricsReport(
            total_contacts=total,
            contacts_with_consent=with_consent,
            contacts_without_consent=without_consent,
            contacts_requiring_reconsent=requiring_reconsent,
            contacts_inactive=inactive,
            contacts_scheduled_for_purge=scheduled_for_purge,
            consent_coverage=coverage,
            reconsent_percentage=reconsent_pct,
            inactive_percentage=inactive_pct,
            purge_pending_percentage=purge_pct,
            compliance_score=compliance_score(coverage, reconsent_pct, inactive_pct, purge_pct),
            category_breakdown=[
                CategoryStats(
                    category=category,
                    granted=counts[CategoryConsent.GRANTED],
                    revoked=counts[CategoryConsent.NOT_GRANTED],
                    pending=counts[CategoryConsent.PENDING],
                    coverage=percentage(counts[CategoryConsent.GRANTED], total),
                )
                for category, counts in categories.items()
            ],
            legal_basis_breakdown=[
                LegalBasisStats(legal_basis=basis, count=count, percentage=percentage(count, total))
                for basis, count in legal_bases.items()
            ],
            lifecycle_breakdown={state: lifecycle[state] for state in LifecycleState},
        )

    @staticmethod
    def summary_stats(report: ComplianceMetricsReport) -> SummaryStats:
        return SummaryStats(
            total_contacts=report.total_contacts,
            consent_coverage=round(report.consent_coverage, 2),
            require_reconsent=report.contacts_requiring_reconsent,
            inactive=report.contacts_inactive,
            scheduled_for_purge=report.contacts_scheduled_for_purge,
            compliance_score=round(report.compliance_score, 2),
        )

    def alerts(self, report: ComplianceMetricsReport) -> list[ComplianceAlert]:
        """Compliance issues, most severe first."""
        alerts: list[ComplianceAlert] = []
        if report.contacts_scheduled_for_purge:
            alerts.append(
                ComplianceAlert(
                    level=AlertLevel.CRITICAL,
                    message="Contacts scheduled for data purge",
                    count=report.contacts_scheduled_for_purge,
                )
            )
        if report.contacts_requiring_reconsent:
            alerts.append(
                ComplianceAlert(
                    level=AlertLevel.WARNING,
                    message="Contacts requiring re-consent",
                    count=report.contacts_requiring_reconsent,
                )
            )
        if report.contacts_inactive:
            months = self._engine.policy.inactivity_threshold_months
            alerts.append(
                ComplianceAlert(
                    level=AlertLevel.WARNING,
                    message=f"Inactive contacts ({months}+ months)",
                    count=report.contacts_inactive,
                )
            )
        if report.contacts_without_consent:
            alerts.append(
                ComplianceAlert(
                    level=AlertLevel.INFO,
                    message="Contacts without consent records",
                    count=report.contacts_without_consent,
                )
            )
        if report.consent_coverage < _COVERAGE_ALERT_THRESHOLD:
            alerts.append(
                ComplianceAlert(
                    level=AlertLevel.INFO,
                    message=f"Consent coverage below {_COVERAGE_ALERT_THRESHOLD:.0f}%",
                    count=round(100 - report.consent_coverage),
                )
            )
        return alerts
