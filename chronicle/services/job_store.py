"""Job record store backed by Supabase.

The ``jobs`` table is the single source of truth for orchestration state.
Every mutation here touches exactly one row; concurrent writers are
last-writer-wins except where a status filter on the UPDATE turns the write
into a compare-and-set.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from chronicle.models.job import ACTIVE_STATUSES, BookJobInput, JobRecord, utcnow
from chronicle.utils.errors import (
    ChronicleError,
    InvalidTransition,
    NotFound,
    ProgressRegression,
    StoreError,
)

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job-{uuid4().hex[:12]}"


class JobStore:
    """Service for job record operations."""

    TABLE = "jobs"

    def __init__(self, supabase_client: Any) -> None:
        """
        Initialize the JobStore.

        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    # ==================== HELPERS ====================

    def _table(self) -> Any:
        return self.supabase.table(self.TABLE)

    @staticmethod
    def _execute(query: Any, action: str) -> Any:
        try:
            return query.execute()
        except ChronicleError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> JobRecord:
        return JobRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            status=row["status"],
            step=row.get("step"),
            progress=row.get("progress") or 0,
            message=row.get("message") or "",
            error=row.get("error"),
            auto_resume_attempts=row.get("auto_resume_attempts") or 0,
            input=row.get("input") or {},
            result_ref=row.get("result_ref"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def _update(
        self,
        job_id: str,
        data: Dict[str, Any],
        action: str,
        expected_status: Optional[Iterable[str]] = None,
    ) -> JobRecord:
        """Update one row, optionally only while it is in an expected status."""
        update_data = dict(data)
        update_data["updated_at"] = utcnow().isoformat()

        query = self._table().update(update_data).eq("id", job_id)
        if expected_status is not None:
            query = query.in_("status", list(expected_status))

        result = self._execute(query, action)
        if not result.data:
            # Either the row is gone or its status moved underneath us
            current = await self.get(job_id)
            raise InvalidTransition(job_id, f"cannot {action} while {current.status}")

        return self._from_row(result.data[0])

    # ==================== CRUD ====================

    async def create(self, owner_id: str, job_input: BookJobInput) -> JobRecord:
        """
        Create a new job in ``queued`` state.

        Args:
            owner_id: The requesting user
            job_input: Validated job input

        Returns:
            The created JobRecord

        Raises:
            StoreError: If creation fails
        """
        now = utcnow().isoformat()
        row = {
            "id": new_job_id(),
            "owner_id": owner_id,
            "status": "queued",
            "step": None,
            "progress": 0,
            "message": "Queued",
            "error": None,
            "auto_resume_attempts": 0,
            "input": job_input.model_dump(),
            "result_ref": None,
            "created_at": now,
            "updated_at": now,
        }

        result = self._execute(self._table().insert(row), "create job")
        if not result.data:
            raise StoreError("Failed to insert job into database")

        logger.info(f"Created job {row['id']} for owner {owner_id}")
        return self._from_row(result.data[0])

    async def get(self, job_id: str) -> JobRecord:
        """
        Retrieve a job by ID.

        Raises:
            NotFound: If no job has this id
        """
        result = self._execute(self._table().select("*").eq("id", job_id), f"get job {job_id}")
        if not result.data:
            raise NotFound(job_id)
        return self._from_row(result.data[0])

    # ==================== TRANSITIONS ====================

    async def checkpoint(self, job_id: str, step: str, progress: int, message: str) -> JobRecord:
        """
        Record a safe resume point for a running job.

        Progress never regresses and 100 is reserved for ``mark_succeeded``.

        Raises:
            ProgressRegression: If ``progress`` is below the stored value
            InvalidTransition: If the job is not running or progress is out of range
        """
        if not 0 <= progress < 100:
            raise InvalidTransition(job_id, f"checkpoint progress {progress} outside [0, 99]")

        current = await self.get(job_id)
        if current.status != "running":
            raise InvalidTransition(job_id, f"cannot checkpoint while {current.status}")
        if progress < current.progress:
            raise ProgressRegression(job_id, current.progress, progress)

        query = (
            self._table()
            .update(
                {
                    "step": step,
                    "progress": progress,
                    "message": message,
                    "updated_at": utcnow().isoformat(),
                }
            )
            .eq("id", job_id)
            .eq("status", "running")
            .lte("progress", progress)
        )
        result = self._execute(query, f"checkpoint job {job_id}")
        if not result.data:
            latest = await self.get(job_id)
            if latest.progress > progress:
                raise ProgressRegression(job_id, latest.progress, progress)
            raise InvalidTransition(job_id, f"cannot checkpoint while {latest.status}")

        logger.debug(f"Checkpoint {job_id}: step={step} progress={progress}")
        return self._from_row(result.data[0])

    async def mark_running(self, job_id: str) -> JobRecord:
        """Move a queued (or already running) job to ``running``."""
        return await self._update(
            job_id, {"status": "running"}, "mark running", expected_status=ACTIVE_STATUSES
        )

    async def mark_succeeded(
        self,
        job_id: str,
        result_ref: str,
        step: Optional[str] = None,
        message: str = "Complete",
    ) -> JobRecord:
        """Terminal success: progress is forced to 100 together with ``result_ref``."""
        data: Dict[str, Any] = {
            "status": "succeeded",
            "progress": 100,
            "message": message,
            "error": None,
            "result_ref": result_ref,
        }
        if step is not None:
            data["step"] = step

        record = await self._update(job_id, data, "mark succeeded", expected_status=("running",))
        logger.info(f"Job {job_id} succeeded: result {result_ref}")
        return record

    async def mark_failed(self, job_id: str, error: str) -> JobRecord:
        """Persist a failure; the job stays recoverable by explicit action."""
        record = await self._update(
            job_id,
            {"status": "failed", "error": error, "message": "Generation failed"},
            "mark failed",
            expected_status=ACTIVE_STATUSES,
        )
        logger.warning(f"Job {job_id} failed at step {record.step}: {error}")
        return record

    async def reset_for_resume(self, job_id: str) -> JobRecord:
        """
        Revive a failed job so it can be resumed.

        Raises:
            InvalidTransition: If the job is not currently ``failed``
        """
        record = await self._update(
            job_id,
            {"status": "running", "error": None, "message": "Resuming"},
            "reset for resume",
            expected_status=("failed",),
        )
        logger.info(f"Job {job_id} reset for resume at step {record.step}")
        return record

    async def increment_auto_resume(self, job_id: str) -> int:
        """Bump the automatic recovery counter and return the new value."""
        current = await self.get(job_id)
        attempts = current.auto_resume_attempts + 1
        query = self._table().update({"auto_resume_attempts": attempts}).eq("id", job_id)
        self._execute(query, f"increment auto resume for {job_id}")
        return attempts

    # ==================== QUERIES ====================

    async def list_by_status(
        self, statuses: Iterable[str], limit: Optional[int] = None
    ) -> List[JobRecord]:
        """Jobs in any of ``statuses``, least recently updated first."""
        query = (
            self._table()
            .select("*")
            .in_("status", list(statuses))
            .order("updated_at", desc=False)
        )
        if limit is not None:
            query = query.limit(limit)
        result = self._execute(query, "list jobs by status")
        return [self._from_row(row) for row in result.data or []]

    async def list_stuck(
        self,
        stale_before: datetime,
        statuses: Iterable[str] = ACTIVE_STATUSES,
        limit: Optional[int] = None,
    ) -> List[JobRecord]:
        """Jobs in ``statuses`` whose last update is older than ``stale_before``."""
        query = (
            self._table()
            .select("*")
            .in_("status", list(statuses))
            .lt("updated_at", stale_before.isoformat())
            .order("updated_at", desc=False)
        )
        if limit is not None:
            query = query.limit(limit)
        result = self._execute(query, "list stuck jobs")
        return [self._from_row(row) for row in result.data or []]

    async def list_failed_resumable(
        self, max_attempts: int, limit: Optional[int] = None
    ) -> List[JobRecord]:
        """Failed jobs that still have automatic resume attempts left."""
        query = (
            self._table()
            .select("*")
            .eq("status", "failed")
            .lt("auto_resume_attempts", max_attempts)
            .order("updated_at", desc=False)
        )
        if limit is not None:
            query = query.limit(limit)
        result = self._execute(query, "list resumable failed jobs")
        return [self._from_row(row) for row in result.data or []]

    async def find_active_for_owner(self, owner_id: str) -> Optional[JobRecord]:
        """The owner's most recently created queued/running job, if any."""
        query = (
            self._table()
            .select("*")
            .eq("owner_id", owner_id)
            .in_("status", list(ACTIVE_STATUSES))
            .order("created_at", desc=True)
            .limit(1)
        )
        result = self._execute(query, f"find active job for {owner_id}")
        if not result.data:
            return None
        return self._from_row(result.data[0])

    async def expire_stale(self, stale_before: datetime, reason: str) -> List[str]:
        """Mark queued/running jobs untouched since ``stale_before`` as failed."""
        stale = await self.list_stuck(stale_before)
        expired: List[str] = []
        for record in stale:
            try:
                await self.mark_failed(record.id, reason)
                expired.append(record.id)
            except InvalidTransition:
                # Finished or failed between the query and the update
                continue
        if expired:
            logger.info(f"Expired {len(expired)} stale job(s): {expired}")
        return expired
