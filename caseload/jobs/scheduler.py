"""Timer-driven runner for idempotent maintenance jobs.

Timers come from APScheduler's `AsyncIOScheduler`. A tick never runs the job
body inside the APScheduler executor: it spawns the run as its own task and
returns, so `stop()` (which shuts the APScheduler down and cancels whatever
its executor still holds) never cancels a run that is already in flight.

Per job state machine::

    stopped --start()--> idle --tick/run_once--> running --> idle
       ^                                                      |
       +----------------------- stop() -----------------------+

A tick or manual `run_once` that arrives while the job is running does not
start a second run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from caseload.core.error_handler import GracefulShutdown, safe_background_task
from caseload.core.metrics import record_job_run

logger = logging.getLogger(__name__)

# Receives the per-category counter dict and fills it in as work completes,
# so counts recorded before a failure survive into the result.
JobAction = Callable[[Dict[str, int]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class JobResult:
    job: str
    started_at: datetime
    finished_at: datetime
    success: bool
    affected: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    skipped: bool = False

    @property
    def total_affected(self) -> int:
        return sum(self.affected.values())

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class JobStats:
    runs: int = 0
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    totals: Dict[str, int] = field(default_factory=dict)

    def record(self, result: JobResult) -> None:
        self.runs += 1
        self.last_run_at = result.finished_at
        if result.success:
            self.successes += 1
            self.last_success_at = result.finished_at
        else:
            self.failures += 1
        for category, count in result.affected.items():
            self.totals[category] = self.totals.get(category, 0) + count


class ScheduledJob:
    """One maintenance job. Only `BackgroundScheduler` writes its state."""

    def __init__(self, name: str, action: JobAction, *, interval_seconds: float = 3600.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.action = action
        self.interval = timedelta(seconds=interval_seconds)
        self.state = JobState.STOPPED
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[JobResult] = None
        self.stats = JobStats()

    @property
    def running(self) -> bool:
        return self.state is JobState.RUNNING

    def __repr__(self) -> str:
        return f"ScheduledJob(name={self.name!r}, state={self.state.value}, interval={self.interval})"


class BackgroundScheduler:
    def __init__(
        self,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        shutdown: Optional[GracefulShutdown] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._shutdown = shutdown
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def register(self, job: ScheduledJob) -> ScheduledJob:
        if job.name in self._jobs:
            raise ValueError(f"job {job.name!r} is already registered")
        self._jobs[job.name] = job
        if self._started:
            self._arm(job, run_now=False)
        return job

    def job(self, name: str) -> ScheduledJob:
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(f"unknown job {name!r}") from None

    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    def stats(self, name: str) -> JobStats:
        return self.job(name).stats

    # Timer control -------------------------------------------------------

    def _apscheduler_id(self, name: str) -> str:
        return f"caseload:{name}"

    def _arm(self, job: ScheduledJob, *, run_now: bool) -> None:
        options = {}
        if run_now:
            options["next_run_time"] = self._clock()
        self._scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=job.interval.total_seconds()),
            id=self._apscheduler_id(job.name),
            args=[job.name],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **options,
        )
        if not job.running:
            job.state = JobState.IDLE

    def start(self, interval_seconds: Optional[float] = None, *, run_now: bool = False) -> None:
        """Arm a repeating timer per job. Must be called with a running event loop."""

        if self._started:
            logger.warning("scheduler.start.ignored", extra={"reason": "already running"})
            return
        for job in self._jobs.values():
            if interval_seconds is not None:
                if interval_seconds <= 0:
                    raise ValueError("interval_seconds must be positive")
                job.interval = timedelta(seconds=interval_seconds)
            self._arm(job, run_now=run_now)
        if not self._scheduler.running:
            self._scheduler.start()
        self._started = True
        logger.info(
            "scheduler.started",
            extra={"jobs": {job.name: job.interval.total_seconds() for job in self._jobs.values()}},
        )

    def stop(self) -> None:
        """Disarm every timer. Runs already in flight are left to finish."""

        if not self._started:
            return
        for job in self._jobs.values():
            try:
                self._scheduler.remove_job(self._apscheduler_id(job.name))
            except JobLookupError:
                pass
            if not job.running:
                job.state = JobState.STOPPED
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._started = False
        logger.info("scheduler.stopped", extra={"inflight": sorted(self._runs)})

    async def _tick(self, name: str) -> None:
        job = self._jobs.get(name)
        if job is None:
            return
        if job.running:
            job.stats.skipped += 1
            record_job_run(name, "skipped")
            logger.info("scheduler.tick.skipped", extra={"job": name, "reason": "previous run in progress"})
            return
        self._spawn(job)

    # Runs ----------------------------------------------------------------

    async def run_once(self, name: str) -> JobResult:
        """Run `name` now and return its result.

        Never raises for job failures; they come back as `success=False`. A
        call while a run is in flight returns a `skipped` result at once.
        """

        job = self.job(name)
        if job.running:
            now = self._clock()
            job.stats.skipped += 1
            record_job_run(name, "skipped")
            logger.info("scheduler.run_once.skipped", extra={"job": name})
            return JobResult(job=name, started_at=now, finished_at=now, success=True, skipped=True)
        task = self._spawn(job)
        return await asyncio.shield(task)

    def _spawn(self, job: ScheduledJob) -> asyncio.Task:
        job.state = JobState.RUNNING
        task = safe_background_task(f"job:{job.name}", self._run(job), shutdown=self._shutdown)
        self._runs[job.name] = task
        task.add_done_callback(lambda done, name=job.name: self._forget(name, done))
        return task

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._runs.get(name) is task:
            del self._runs[name]
        if not task.cancelled():
            task.exception()

    async def _run(self, job: ScheduledJob) -> JobResult:
        started_at = self._clock()
        affected: Dict[str, int] = {}
        error: Optional[str] = None
        logger.info("job.started", extra={"job": job.name})
        try:
            await job.action(affected)
        except asyncio.CancelledError:
            job.state = JobState.IDLE if self._started else JobState.STOPPED
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning(
                "job.failed",
                extra={"job": job.name, "error": type(exc).__name__, "detail": error, "affected": affected},
                exc_info=True,
            )

        result = JobResult(
            job=job.name,
            started_at=started_at,
            finished_at=self._clock(),
            success=error is None,
            affected=dict(affected),
            error=error,
        )
        job.last_run_at = result.finished_at
        job.last_result = result
        job.stats.record(result)
        job.state = JobState.IDLE if self._started else JobState.STOPPED
        record_job_run(job.name, "success" if result.success else "failure")
        if result.success:
            logger.info(
                "job.finished",
                extra={"job": job.name, "affected": result.affected, "duration": result.duration_seconds},
            )
        return result

    async def wait_for_runs(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight runs, e.g. after `stop()` during shutdown."""
        pending = [task for task in self._runs.values() if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)


__all__ = [
    "BackgroundScheduler",
    "JobAction",
    "JobResult",
    "JobState",
    "JobStats",
    "ScheduledJob",
]
