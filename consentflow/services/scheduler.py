"""Background scheduler for the compliance jobs.

Runs the three reconciliation runs daily and a compliance report weekly
from an ``asyncio`` task inside the application's event loop.  Jobs can
also be triggered on demand through the admin API.

Each job owns an :class:`asyncio.Lock`.  Scheduled ticks, the
``scheduler/run`` endpoint and the manual workflow triggers all run jobs
under that lock, so no two runs of the same job ever overlap within this
process: a tick that finds its job running is skipped, and a manual
trigger gets :class:`~consentflow.errors.JobAlreadyRunning`.

A job is due once its hour has passed on a scheduled day and no scheduled
run of it has started that day; manual runs never consume the day's slot.

Schedule (UTC)
--------------
- **Inactivity check**: daily at 02:00.
- **Re-consent check**: daily at 03:00.
- **Purge execution**: daily at 04:00.
- **Weekly compliance report**: Mondays at 06:00.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel

from consentflow.errors import JobAlreadyRunning
from consentflow.services.clock import Clock
from consentflow.services.consent_service import ConsentService

logger = structlog.get_logger(__name__)


class JobName(StrEnum):
    __slots__ = ()

    INACTIVITY_CHECK = "inactivity_check"
    RECONSENT_CHECK = "reconsent_check"
    PURGE_EXECUTION = "purge_execution"
    WEEKLY_REPORT = "weekly_report"


class JobOutcome(StrEnum):
    __slots__ = ()

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class JobRun(BaseModel):
    job: JobName
    outcome: JobOutcome
    started_at: datetime
    finished_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None


class JobStatus(BaseModel):
    name: JobName
    schedule: str
    running: bool
    last_run: datetime | None = None
    last_outcome: JobOutcome | None = None
    last_error: str | None = None


JobAction = Callable[[], Awaitable[BaseModel | dict[str, Any]]]


class _Job:
    __slots__ = (
        "action",
        "hour",
        "last_error",
        "last_outcome",
        "last_run",
        "last_scheduled_day",
        "lock",
        "name",
        "weekday",
    )

    def __init__(self, name: JobName, hour: int, action: JobAction, weekday: int | None = None) -> None:
        self.name = name
        self.hour = hour
        self.weekday = weekday
        self.action = action
        self.lock = asyncio.Lock()
        self.last_run: datetime | None = None
        self.last_scheduled_day: date | None = None
        self.last_outcome: JobOutcome | None = None
        self.last_error: str | None = None

    @property
    def schedule(self) -> str:
        if self.weekday is None:
            return f"daily {self.hour:02d}:00 UTC"
        day = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")[self.weekday]
        return f"weekly {day} {self.hour:02d}:00 UTC"

    def is_due(self, now: datetime) -> bool:
        if now.hour < self.hour:
            return False
        if self.weekday is not None and now.weekday() != self.weekday:
            return False
        return self.last_scheduled_day != now.date()


# ---------------------------------------------------------------------------
# ComplianceScheduler
# ---------------------------------------------------------------------------


class ComplianceScheduler:
    """Runs compliance jobs on a fixed UTC schedule.

    Parameters
    ----------
    service:
        The consent service whose entry points the jobs invoke.
    clock:
        Source of "now" for schedule checks and run timestamps.
    check_interval_seconds:
        How often the background loop wakes to look for due jobs.
    """

    def __init__(
        self,
        service: ConsentService,
        clock: Clock,
        check_interval_seconds: float = 300,
    ) -> None:
        self._service = service
        self._clock = clock
        self._interval = check_interval_seconds
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._jobs: dict[JobName, _Job] = {
            JobName.INACTIVITY_CHECK: _Job(JobName.INACTIVITY_CHECK, 2, service.run_inactivity_check),
            JobName.RECONSENT_CHECK: _Job(JobName.RECONSENT_CHECK, 3, service.run_reconsent_check),
            JobName.PURGE_EXECUTION: _Job(JobName.PURGE_EXECUTION, 4, service.run_purge_execution),
            JobName.WEEKLY_REPORT: _Job(JobName.WEEKLY_REPORT, 6, self._weekly_report, weekday=0),
        }

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> list[JobStatus]:
        return [
            JobStatus(
                name=job.name,
                schedule=job.schedule,
                running=job.lock.locked(),
                last_run=job.last_run,
                last_outcome=job.last_outcome,
                last_error=job.last_error,
            )
            for job in self._jobs.values()
        ]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, job: _Job, *, scheduled: bool) -> BaseModel | dict[str, Any]:
        if job.lock.locked():
            raise JobAlreadyRunning(str(job.name))

        async with job.lock:
            started = self._clock.now()
            job.last_run = started
            if scheduled:
                job.last_scheduled_day = started.date()
            logger.info("scheduler.job_started", job=str(job.name), scheduled=scheduled)
            try:
                result = await job.action()
            except Exception as exc:
                job.last_outcome = JobOutcome.FAILED
                job.last_error = str(exc)
                raise

        job.last_outcome = JobOutcome.COMPLETED
        job.last_error = None
        logger.info("scheduler.job_completed", job=str(job.name))
        return result

    async def run_exclusive(self, name: JobName | str) -> BaseModel | dict[str, Any]:
        """Run a job under its lock and return the job's own result.

        Errors from the job propagate, and :class:`JobAlreadyRunning` is
        raised when a run of the job is already in progress.
        """
        return await self._execute(self._jobs[JobName(name)], scheduled=False)

    async def run_job_now(self, name: JobName | str, *, scheduled: bool = False) -> JobRun:
        """Run a job immediately unless a run of it is already in progress.

        Failures are recorded on the returned :class:`JobRun` instead of
        being raised.
        """
        job = self._jobs[JobName(name)]
        started = self._clock.now()
        try:
            result = await self._execute(job, scheduled=scheduled)
        except JobAlreadyRunning:
            logger.info("scheduler.job_skipped", job=str(job.name), reason="already_running")
            return JobRun(job=job.name, outcome=JobOutcome.SKIPPED, started_at=started)
        except Exception as exc:
            logger.error("scheduler.job_failed", job=str(job.name), exc_info=True)
            return JobRun(
                job=job.name,
                outcome=JobOutcome.FAILED,
                started_at=started,
                finished_at=self._clock.now(),
                error=str(exc),
            )

        payload = result.model_dump(mode="json", exclude={"results"}) if isinstance(result, BaseModel) else result
        return JobRun(
            job=job.name,
            outcome=JobOutcome.COMPLETED,
            started_at=started,
            finished_at=self._clock.now(),
            result=payload,
        )

    async def _weekly_report(self) -> dict[str, Any]:
        now = self._clock.now()
        report = self._service.get_compliance_report(now - timedelta(days=7), now)
        summary = await self._service.get_summary_stats()
        logger.info(
            "scheduler.weekly_report",
            total_consent_changes=report.total_consent_changes,
            total_contacts=summary.total_contacts,
            compliance_score=summary.compliance_score,
        )
        return {
            "report": report.model_dump(mode="json"),
            "summary": summary.model_dump(mode="json"),
        }

    async def tick(self) -> list[JobRun]:
        """Run every job that is due now; used by the background loop."""
        now = self._clock.now()
        due = [job.name for job in self._jobs.values() if job.is_due(now)]
        return [await self.run_job_now(name, scheduled=True) for name in due]

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        logger.info("scheduler.background_started", interval_s=self._interval)
        try:
            while True:
                await self.tick()
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.info("scheduler.background_cancelled")
            raise

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="compliance-scheduler")

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        logger.info("scheduler.stopping")
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._task, timeout=10.0)
            self._task = None
        logger.info("scheduler.stopped")
