"""Recovery for stuck and failed jobs.

Kick is the operator path: it always re-enters the job. The automatic sweep
is bounded by ``max_auto_resume_attempts``; once a job reaches the cap it is
left ``failed`` for its owner (or an operator) to act on.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from chronicle.models.job import ACTIVE_STATUSES, JobRecord, utcnow
from chronicle.models.recovery import (
    HealthReport,
    JobSnapshot,
    KickResult,
    SweepItem,
    SweepReport,
)
from chronicle.services.book_steps import describe_step
from chronicle.services.job_store import JobStore
from chronicle.services.tick import TickHandler
from chronicle.utils.errors import AttemptsExhausted, ChronicleError, InvalidTransition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryConfig:
    """Thresholds shared by the sweep, the health check and the helpers."""

    # Jobs not updated in this many minutes are considered stuck
    stale_timeout_minutes: int = 5
    # Automatic attempts before a job is left failed for manual action
    max_auto_resume_attempts: int = 20
    max_jobs_per_run: int = 10
    cleanup_timeout_minutes: int = 60

    @classmethod
    def from_settings(cls) -> "RecoveryConfig":
        from chronicle.config import get_settings

        settings = get_settings()
        return cls(
            stale_timeout_minutes=settings.stale_timeout_minutes,
            max_auto_resume_attempts=settings.max_auto_resume_attempts,
            max_jobs_per_run=settings.max_jobs_per_run,
            cleanup_timeout_minutes=settings.cleanup_timeout_minutes,
        )


# ==================== HELPERS ====================


def minutes_since_update(job: JobRecord, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    return round((now - job.updated_at).total_seconds() / 60)


def is_job_stuck(job: JobRecord, config: RecoveryConfig, now: Optional[datetime] = None) -> bool:
    """An active job whose last update is older than the stale timeout."""
    if job.status not in ACTIVE_STATUSES:
        return False
    now = now or utcnow()
    return now - job.updated_at > timedelta(minutes=config.stale_timeout_minutes)


def has_exceeded_max_attempts(job: JobRecord, config: RecoveryConfig) -> bool:
    return job.auto_resume_attempts >= config.max_auto_resume_attempts


def can_auto_resume(job: JobRecord, config: RecoveryConfig, now: Optional[datetime] = None) -> bool:
    """Stuck (or failed) with automatic attempts left."""
    if has_exceeded_max_attempts(job, config):
        return False
    return job.status == "failed" or is_job_stuck(job, config, now)


def status_message(job: JobRecord, config: RecoveryConfig, now: Optional[datetime] = None) -> str:
    """Owner-facing status line; never exposes pipeline internals."""
    if job.status == "succeeded":
        return "Completed"
    if job.status == "failed":
        return job.error or "Generation failed"
    if is_job_stuck(job, config, now):
        if has_exceeded_max_attempts(job, config):
            return "Generation failed after multiple attempts"
        return "Generation appears stuck - will auto-resume shortly"
    return describe_step(job.step)


def snapshot(job: JobRecord, now: Optional[datetime] = None) -> JobSnapshot:
    return JobSnapshot(
        job_id=job.id,
        owner_id=job.owner_id,
        status=job.status,
        step=job.step,
        step_description=describe_step(job.step),
        progress=job.progress,
        error=job.error,
        auto_resume_attempts=job.auto_resume_attempts,
        result_ref=job.result_ref,
        created_at=job.created_at,
        updated_at=job.updated_at,
        minutes_since_update=minutes_since_update(job, now),
    )


# ==================== CONTROLLER ====================


class RecoveryController:
    """Kick, automatic resume sweep, cleanup and health reporting."""

    def __init__(
        self,
        store: JobStore,
        tick_handler: TickHandler,
        config: Optional[RecoveryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the RecoveryController.

        Args:
            store: Job record store
            tick_handler: Entry point used to re-enter jobs
            config: Recovery thresholds (defaults to application settings)
            clock: Source of the current time (overridable in tests)
        """
        self.store = store
        self.tick_handler = tick_handler
        self.config = config or RecoveryConfig.from_settings()
        self.clock = clock

    def _stale_cutoff(self) -> datetime:
        return self.clock() - timedelta(minutes=self.config.stale_timeout_minutes)

    async def probe(self, job_id: str) -> JobSnapshot:
        """Read-only view of a job; no side effects."""
        return snapshot(await self.store.get(job_id), self.clock())

    async def kick(self, job_id: str, triggered_by: str = "operator") -> KickResult:
        """
        Manually re-enter a job.

        Manual kicks ignore the automatic attempt cap.

        Raises:
            NotFound: If the job does not exist
            Busy: If another execution holds the job
        """
        record = await self.store.get(job_id)
        prior = snapshot(record, self.clock())
        logger.info(
            f"[Kick] Job {job_id} by {triggered_by}: status={record.status} step={record.step} "
            f"progress={record.progress} error={record.error} updated_at={record.updated_at.isoformat()}"
        )

        if record.status == "succeeded":
            return KickResult(message="Job already complete", prior=prior, job=prior)

        if record.status == "failed":
            logger.info(f"[Kick] Resetting failed job {job_id} to running")

        # A failed job is reset under the tick's lock, then resumed
        tick = await self.tick_handler.tick(
            job_id, resume=record.status == "failed", triggered_by=triggered_by
        )
        current = snapshot(await self.store.get(job_id), self.clock())
        logger.info(
            f"[Kick] Job {job_id}: {prior.status}@{prior.progress}% -> {current.status}@{current.progress}%"
        )

        if tick.aborted:
            message = "Job kicked; execution stopped early"
        elif tick.status == "failed":
            message = "Job kicked; generation failed again"
        else:
            message = "Job kicked successfully"
        return KickResult(message=message, prior=prior, job=current, tick=tick)

    async def find_resumable(self, owner_id: str) -> Optional[JobRecord]:
        """The owner's in-progress job a client should be sent back to."""
        return await self.store.find_active_for_owner(owner_id)

    async def stuck_jobs(self) -> List[JobSnapshot]:
        """Active jobs past the stale timeout, oldest first."""
        now = self.clock()
        return [snapshot(job, now) for job in await self.store.list_stuck(self._stale_cutoff())]

    async def _candidates(self) -> List[JobRecord]:
        cap = self.config.max_auto_resume_attempts
        limit = self.config.max_jobs_per_run

        stuck = [
            job
            for job in await self.store.list_stuck(self._stale_cutoff())
            if job.auto_resume_attempts < cap
        ]
        failed = await self.store.list_failed_resumable(cap, limit=limit)
        return (stuck + failed)[:limit]

    async def auto_resume(self, job_id: str) -> SweepItem:
        """
        Make one automatic recovery attempt on a job.

        The attempt counter is bumped before the tick, so a tick that crashes
        the process still counts against the cap.

        Raises:
            NotFound: If the job does not exist
            AttemptsExhausted: If the job has no automatic attempts left
        """
        job = await self.store.get(job_id)
        if has_exceeded_max_attempts(job, self.config):
            raise AttemptsExhausted(job_id, job.auto_resume_attempts)

        attempt = await self.store.increment_auto_resume(job_id)
        logger.info(f"[AutoResume] Resuming job {job_id} (step: {job.step}, attempt: {attempt})")
        try:
            tick = await self.tick_handler.tick(
                job_id, resume=job.status == "failed", triggered_by="auto-resume"
            )
        except ChronicleError as e:
            logger.error(f"[AutoResume] Job {job_id} attempt {attempt} failed: {e}")
            return SweepItem(
                job_id=job_id, prior_status=job.status, attempt=attempt, success=False, error=str(e)
            )

        logger.info(f"[AutoResume] Job {job_id} tick finished: {tick.status} at {tick.progress}%")
        return SweepItem(
            job_id=job_id,
            prior_status=job.status,
            attempt=attempt,
            success=True,
            status=tick.status,
            error=tick.error,
        )

    async def auto_resume_sweep(self) -> SweepReport:
        """
        Resume stuck and failed jobs that still have automatic attempts left.

        Active jobs that exhausted their attempts are marked failed afterwards.
        """
        started = time.monotonic()
        candidates = await self._candidates()
        report = SweepReport()

        if candidates:
            logger.info(
                f"[AutoResume] Found {len(candidates)} job(s) to resume: "
                + ", ".join(f"{job.id}@{job.step}(x{job.auto_resume_attempts})" for job in candidates)
            )

        for job in candidates:
            try:
                item = await self.auto_resume(job.id)
            except ChronicleError as e:
                logger.warning(f"[AutoResume] Skipping job {job.id}: {e}")
                item = SweepItem(
                    job_id=job.id,
                    prior_status=job.status,
                    attempt=job.auto_resume_attempts,
                    success=False,
                    error=str(e),
                )
            report.results.append(item)

        report.marked_as_failed = await self._fail_exhausted()
        report.processed = len(report.results)
        report.succeeded = sum(1 for item in report.results if item.success)
        report.failed = report.processed - report.succeeded
        report.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            f"[AutoResume] Completed: {report.succeeded} succeeded, {report.failed} failed, "
            f"{report.marked_as_failed} marked as failed, {report.duration_ms}ms"
        )
        return report

    async def _fail_exhausted(self) -> int:
        cap = self.config.max_auto_resume_attempts
        reason = (
            f"Generation failed after {cap} automatic resume attempts. "
            "Please try creating a new story."
        )
        marked = 0
        for job in await self.store.list_by_status(ACTIVE_STATUSES):
            if job.auto_resume_attempts < cap:
                continue
            try:
                await self.store.mark_failed(job.id, reason)
            except InvalidTransition:
                # Finished between the query and the update
                continue
            marked += 1
        if marked:
            logger.warning(f"[AutoResume] Marked {marked} job(s) as permanently failed")
        return marked

    async def cleanup(self) -> List[str]:
        """Fail active jobs that made no progress for ``cleanup_timeout_minutes``."""
        minutes = self.config.cleanup_timeout_minutes
        cutoff = self.clock() - timedelta(minutes=minutes)
        return await self.store.expire_stale(
            cutoff, f"Job timed out after {minutes} minutes without progress"
        )

    async def health(self) -> HealthReport:
        """
        Summarize stuck jobs for external monitoring.

        ``critical`` means recoverable jobs have been stuck for more than three
        stale timeouts, i.e. the sweep is not keeping up.
        """
        now = self.clock()
        stuck = await self.store.list_stuck(self._stale_cutoff())
        exhausted = [job for job in stuck if has_exceeded_max_attempts(job, self.config)]
        recoverable = len(stuck) - len(exhausted)
        oldest = minutes_since_update(stuck[0], now) if stuck else 0

        report = HealthReport(
            status="healthy" if recoverable == 0 else "degraded",
            timestamp=now,
            total_stuck=len(stuck),
            recoverable=recoverable,
            permanently_failed=len(exhausted),
            oldest_stale_minutes=oldest,
            stale_timeout_minutes=self.config.stale_timeout_minutes,
            max_auto_resume_attempts=self.config.max_auto_resume_attempts,
        )

        if recoverable > 0 and oldest > self.config.stale_timeout_minutes * 3:
            report.status = "critical"
            report.message = (
                f"{recoverable} stuck job(s) not being recovered. Oldest: {oldest} minutes stale."
            )
            logger.error(f"[Health] {report.message}")
        return report


class RecoverySweeper:
    """Runs ``auto_resume_sweep`` on a fixed interval in the background."""

    def __init__(self, controller: RecoveryController, interval_seconds: float = 300) -> None:
        self.controller = controller
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Recovery sweeper started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.controller.auto_resume_sweep()
            except Exception:
                logger.exception("Auto-resume sweep failed; retrying next interval")
