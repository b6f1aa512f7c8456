"""Tick handler: advance one job as far as possible.

A tick is idempotent per job: whichever caller (worker, sweep, kick) reaches
a job first holds it, and every concurrent caller gets ``Busy`` instead of
starting a second execution.
"""

import asyncio
import logging
from typing import Dict, Optional
from uuid import uuid4

from pydantic import ValidationError

from chronicle.models.job import BookJobInput, JobRecord, TickResult
from chronicle.models.queue import Lease
from chronicle.services.dispatcher import JobDispatcher
from chronicle.services.job_store import JobStore
from chronicle.services.orchestrator import Orchestrator
from chronicle.utils.errors import (
    AlreadyTerminal,
    Busy,
    ExecutionAborted,
    InvalidTransition,
    JobCancelled,
    StepError,
)

logger = logging.getLogger(__name__)


class TickHandler:
    """Single entry point that drives a job through the orchestrator."""

    def __init__(
        self,
        store: JobStore,
        queue: JobDispatcher,
        orchestrator: Orchestrator,
        owner: Optional[str] = None,
    ) -> None:
        """
        Initialize the TickHandler.

        Args:
            store: Job record store
            queue: Dispatcher providing the per-job advisory lock
            orchestrator: Step runner
            owner: Lease owner name for out-of-band ticks
        """
        self.store = store
        self.queue = queue
        self.orchestrator = orchestrator
        self.owner = owner or f"tick-{uuid4().hex[:8]}"
        self._locks: Dict[str, asyncio.Lock] = {}

    async def tick(
        self,
        job_id: str,
        resume: bool = False,
        triggered_by: str = "manual",
        lease: Optional[Lease] = None,
    ) -> TickResult:
        """
        Advance a job from its last checkpoint.

        Args:
            job_id: The job to advance
            resume: Revive the job first if it is ``failed``
            triggered_by: Label of the caller, echoed in the result and logs
            lease: Queue lease held by a worker; without one the advisory
                lock is acquired (and given back) here

        Returns:
            TickResult describing the job after this tick. A step failure is
            reported with ``status="failed"``, not raised.

        Raises:
            NotFound: If the job does not exist
            AlreadyTerminal: If the job already succeeded
            Busy: If another execution holds the job
        """
        record = await self.store.get(job_id)
        if record.status == "succeeded":
            raise AlreadyTerminal(job_id)
        if record.status == "failed" and not resume:
            logger.info(f"Tick on failed job {job_id} without resume ({triggered_by}); nothing to do")
            return TickResult.from_record(record, triggered_by)

        lock = self._locks.setdefault(job_id, asyncio.Lock())
        if lock.locked():
            raise Busy(job_id)

        async with lock:
            try:
                if lease is not None:
                    return await self._tick_with_lease(job_id, resume, triggered_by, lease)
                return await self._tick_out_of_band(job_id, resume, triggered_by)
            finally:
                self._locks.pop(job_id, None)

    async def _tick_out_of_band(self, job_id: str, resume: bool, triggered_by: str) -> TickResult:
        acquired = await self.queue.acquire(job_id, self.owner)
        try:
            result = await self._tick_with_lease(job_id, resume, triggered_by, acquired)
        except AlreadyTerminal:
            await self.queue.ack(acquired)
            raise
        except Exception:
            await self.queue.release(acquired)
            raise

        if result.status in ("succeeded", "failed"):
            await self.queue.ack(acquired)
        elif not result.aborted:
            await self.queue.release(acquired)
        return result

    async def _tick_with_lease(
        self, job_id: str, resume: bool, triggered_by: str, lease: Lease
    ) -> TickResult:
        # Re-read under the lock; the job may have moved since the first look
        record = await self.store.get(job_id)
        if record.status == "succeeded":
            raise AlreadyTerminal(job_id)
        if record.status == "failed":
            if not resume:
                return TickResult.from_record(record, triggered_by)
            record = await self.store.reset_for_resume(job_id)

        record = await self.store.mark_running(job_id)
        logger.info(
            f"Tick {job_id} ({triggered_by}): running from step {record.step or 'start'} "
            f"at {record.progress}%"
        )

        try:
            job_input = BookJobInput.model_validate(record.input)
        except ValidationError as e:
            failed = await self.store.mark_failed(job_id, f"Invalid job input: {e}")
            return TickResult.from_record(failed, triggered_by)

        held = lease

        async def on_progress(step: str, progress: int, message: str) -> None:
            nonlocal held
            # Raises LeaseExpired if another worker may own the job now
            held = await self.queue.renew(held)
            try:
                await self.store.checkpoint(job_id, step, progress, message)
            except InvalidTransition as e:
                raise JobCancelled(f"Job {job_id} changed underneath this execution: {e}") from e

        async def before_save(step: str) -> None:
            nonlocal held
            # A step output moves the resume point, so writing it needs the lease too
            held = await self.queue.renew(held)

        try:
            manuscript = await self.orchestrator.run(
                job_id,
                record.owner_id,
                job_input,
                on_progress,
                resume_from=record.step,
                before_save=before_save,
            )
        except StepError as e:
            attempts = record.auto_resume_attempts
            logger.error(
                f"Job {job_id} failed at step {e.step} (auto resume attempts: {attempts}): {e.cause}"
            )
            failed = await self.store.mark_failed(job_id, str(e))
            return TickResult.from_record(failed, triggered_by)
        except ExecutionAborted as e:
            return await self._aborted(job_id, triggered_by, e)

        try:
            done = await self.store.mark_succeeded(
                job_id, manuscript.document_id, message=f"Complete: {manuscript.title}"
            )
        except InvalidTransition as e:
            return await self._aborted(job_id, triggered_by, e)

        return TickResult.from_record(done, triggered_by)

    async def _aborted(self, job_id: str, triggered_by: str, reason: Exception) -> TickResult:
        logger.warning(f"Tick {job_id} ({triggered_by}) aborted: {reason}")
        record: JobRecord = await self.store.get(job_id)
        return TickResult.from_record(record, triggered_by, aborted=True)
