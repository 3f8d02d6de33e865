"""Tests for the compliance job scheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from consentflow.crm.memory import InMemoryContactStore
from consentflow.errors import ExternalServiceError, JobAlreadyRunning
from consentflow.models.consent import ConsentPolicy
from consentflow.models.results import InactivityRunResult, PurgeRunResult, ReconsentRunResult
from consentflow.services.audit_trail import AuditTrail
from consentflow.services.clock import FixedClock
from consentflow.services.compliance_metrics import ComplianceMetrics
from consentflow.services.consent_service import ConsentService
from consentflow.services.decision_engine import ConsentDecisionEngine
from consentflow.services.reconciliation import ReconciliationRunner
from consentflow.services.scheduler import ComplianceScheduler, JobName, JobOutcome

# A Monday.
MONDAY = datetime(2025, 6, 16, 2, 15, tzinfo=UTC)
BEFORE_ANY_JOB = datetime(2025, 6, 16, 1, 0, tzinfo=UTC)


class _FakeService:
    """Stands in for the consent service; counts calls per run."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None

    async def run_inactivity_check(self) -> InactivityRunResult:
        self.calls.append("inactivity")
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return InactivityRunResult(total_checked=5, inactive_count=1)

    async def run_reconsent_check(self) -> ReconsentRunResult:
        self.calls.append("reconsent")
        return ReconsentRunResult()

    async def run_purge_execution(self) -> PurgeRunResult:
        self.calls.append("purge")
        return PurgeRunResult()


def _scheduler(clock: FixedClock) -> tuple[ComplianceScheduler, _FakeService]:
    service = _FakeService()
    return ComplianceScheduler(service, clock), service  # type: ignore[arg-type]


class TestRunJobNow:
    @pytest.mark.asyncio
    async def test_completed_run_carries_summary(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))

        run = await scheduler.run_job_now(JobName.INACTIVITY_CHECK)

        assert run.outcome == JobOutcome.COMPLETED
        assert run.result is not None
        assert run.result["total_checked"] == 5
        assert "results" not in run.result
        assert service.calls == ["inactivity"]

    @pytest.mark.asyncio
    async def test_job_name_may_be_a_string(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))
        run = await scheduler.run_job_now("purge_execution")
        assert run.job == JobName.PURGE_EXECUTION
        assert service.calls == ["purge"]

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_skipped(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))
        service.gate = asyncio.Event()

        first = asyncio.create_task(scheduler.run_job_now(JobName.INACTIVITY_CHECK))
        await asyncio.sleep(0)
        second = await scheduler.run_job_now(JobName.INACTIVITY_CHECK)
        service.gate.set()
        completed = await first

        assert second.outcome == JobOutcome.SKIPPED
        assert completed.outcome == JobOutcome.COMPLETED
        assert service.calls == ["inactivity"]

    @pytest.mark.asyncio
    async def test_failure_is_recorded_not_raised(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))
        service.fail_with = ExternalServiceError("CRM down", status_code=503)

        run = await scheduler.run_job_now(JobName.INACTIVITY_CHECK)

        assert run.outcome == JobOutcome.FAILED
        assert run.error == "CRM down"
        status = next(s for s in scheduler.status() if s.name == JobName.INACTIVITY_CHECK)
        assert status.last_outcome == JobOutcome.FAILED
        assert status.last_error == "CRM down"
        assert status.running is False

    @pytest.mark.asyncio
    async def test_manual_trigger_during_scheduled_run_is_refused(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))
        service.gate = asyncio.Event()

        scheduled = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)
        with pytest.raises(JobAlreadyRunning):
            await scheduler.run_exclusive(JobName.INACTIVITY_CHECK)
        service.gate.set()
        await scheduled

        assert service.calls == ["inactivity"]

    @pytest.mark.asyncio
    async def test_tick_during_manual_run_is_skipped(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))
        service.gate = asyncio.Event()

        manual = asyncio.create_task(scheduler.run_exclusive(JobName.INACTIVITY_CHECK))
        await asyncio.sleep(0)
        runs = await scheduler.tick()
        service.gate.set()
        result = await manual

        assert [r.outcome for r in runs] == [JobOutcome.SKIPPED]
        assert isinstance(result, InactivityRunResult)
        assert service.calls == ["inactivity"]

    @pytest.mark.asyncio
    async def test_run_exclusive_propagates_failures(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))
        service.fail_with = ExternalServiceError("CRM down", status_code=503)

        with pytest.raises(ExternalServiceError):
            await scheduler.run_exclusive(JobName.INACTIVITY_CHECK)

        status = next(s for s in scheduler.status() if s.name == JobName.INACTIVITY_CHECK)
        assert status.last_outcome == JobOutcome.FAILED
        assert status.running is False

    def test_status_lists_every_job(self) -> None:
        scheduler, _ = _scheduler(FixedClock(MONDAY))
        schedules = {s.name: s.schedule for s in scheduler.status()}
        assert schedules == {
            JobName.INACTIVITY_CHECK: "daily 02:00 UTC",
            JobName.RECONSENT_CHECK: "daily 03:00 UTC",
            JobName.PURGE_EXECUTION: "daily 04:00 UTC",
            JobName.WEEKLY_REPORT: "weekly Mon 06:00 UTC",
        }


class TestTick:
    @pytest.mark.asyncio
    async def test_due_jobs_run_once_per_day(self) -> None:
        clock = FixedClock(MONDAY)
        scheduler, service = _scheduler(clock)

        runs = await scheduler.tick()
        again = await scheduler.tick()

        assert [r.job for r in runs] == [JobName.INACTIVITY_CHECK]
        assert again == []
        clock.advance(hours=1)
        assert [r.job for r in await scheduler.tick()] == [JobName.RECONSENT_CHECK]
        clock.advance(days=1)
        assert [r.job for r in await scheduler.tick()] == [JobName.INACTIVITY_CHECK, JobName.RECONSENT_CHECK]
        assert service.calls == ["inactivity", "reconsent", "inactivity", "reconsent"]

    @pytest.mark.asyncio
    async def test_late_tick_still_runs_the_job(self) -> None:
        clock = FixedClock(datetime(2025, 6, 17, 3, 40, tzinfo=UTC))
        scheduler, service = _scheduler(clock)

        runs = await scheduler.tick()

        assert [r.job for r in runs] == [JobName.INACTIVITY_CHECK, JobName.RECONSENT_CHECK]
        assert service.calls == ["inactivity", "reconsent"]

    @pytest.mark.asyncio
    async def test_manual_run_keeps_the_scheduled_slot(self) -> None:
        clock = FixedClock(BEFORE_ANY_JOB)
        scheduler, service = _scheduler(clock)

        await scheduler.run_job_now(JobName.INACTIVITY_CHECK)
        clock.advance(hours=1, minutes=10)
        runs = await scheduler.tick()

        assert [r.job for r in runs] == [JobName.INACTIVITY_CHECK]
        assert service.calls == ["inactivity", "inactivity"]

    @pytest.mark.asyncio
    async def test_skipped_tick_is_retried(self) -> None:
        scheduler, service = _scheduler(FixedClock(MONDAY))
        service.gate = asyncio.Event()

        manual = asyncio.create_task(scheduler.run_job_now(JobName.INACTIVITY_CHECK))
        await asyncio.sleep(0)
        assert [r.outcome for r in await scheduler.tick()] == [JobOutcome.SKIPPED]
        service.gate.set()
        await manual

        assert [r.outcome for r in await scheduler.tick()] == [JobOutcome.COMPLETED]

    @pytest.mark.asyncio
    async def test_nothing_due_before_the_first_job(self) -> None:
        scheduler, service = _scheduler(FixedClock(BEFORE_ANY_JOB))
        assert await scheduler.tick() == []
        assert service.calls == []


class TestWeeklyReport:
    @pytest.mark.asyncio
    async def test_weekly_report_runs_on_monday_morning(self) -> None:
        clock = FixedClock(datetime(2025, 6, 16, 6, 5, tzinfo=UTC))
        store = InMemoryContactStore()
        store.add("c1")
        audit = AuditTrail(clock)
        engine = ConsentDecisionEngine(ConsentPolicy())
        runner = ReconciliationRunner(store, engine, audit, clock)
        service = ConsentService(store, audit, engine, runner, ComplianceMetrics(engine), clock)
        scheduler = ComplianceScheduler(service, clock)

        runs = {r.job: r for r in await scheduler.tick()}

        report = runs[JobName.WEEKLY_REPORT]
        assert report.outcome == JobOutcome.COMPLETED
        assert report.result is not None
        assert report.result["summary"]["total_contacts"] == 1
        assert report.result["report"]["total_consent_changes"] == 0

    @pytest.mark.asyncio
    async def test_not_due_on_other_days(self) -> None:
        scheduler, _ = _scheduler(FixedClock(datetime(2025, 6, 17, 6, 5, tzinfo=UTC)))
        assert JobName.WEEKLY_REPORT not in [r.job for r in await scheduler.tick()]


class TestBackgroundLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        scheduler, _ = _scheduler(FixedClock(BEFORE_ANY_JOB))
        scheduler.start()
        await asyncio.sleep(0)
        assert scheduler.is_running
        await scheduler.stop()
        assert not scheduler.is_running
