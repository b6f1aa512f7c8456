"""Job dispatcher interface and durable Supabase-backed queue.

Each job has at most one row in ``job_queue`` (keyed by job id), so a job can
never be leased twice at once no matter how many workers poll. Claims are
compare-and-set UPDATEs filtered on the state or lease token the claimer
observed; whoever's UPDATE returns the row owns the lease.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from chronicle.models.job import utcnow
from chronicle.models.queue import Lease, StalledReport
from chronicle.utils.errors import Busy, ChronicleError, LeaseExpired, QueueError

logger = logging.getLogger(__name__)


class JobDispatcher(ABC):
    """Abstract interface for delivering jobs to workers."""

    @abstractmethod
    async def enqueue(self, job_id: str, job_input: Dict[str, Any]) -> None:
        """Durably record that a job needs execution."""
        ...

    @abstractmethod
    async def consume(self, owner: str) -> Optional[Lease]:
        """Lease the next ready job, or return None when the queue is empty."""
        ...

    @abstractmethod
    async def acquire(self, job_id: str, owner: str) -> Lease:
        """Lease a specific job for an out-of-band tick; raises Busy if held."""
        ...

    @abstractmethod
    async def renew(self, lease: Lease) -> Lease:
        """Extend a still-valid lease; raises LeaseExpired otherwise."""
        ...

    @abstractmethod
    async def is_valid(self, lease: Lease) -> bool:
        ...

    @abstractmethod
    async def ack(self, lease: Lease) -> None:
        """Remove the message once the job record reached a terminal state."""
        ...

    @abstractmethod
    async def release(self, lease: Lease) -> None:
        """Give the message back without completing it."""
        ...

    @abstractmethod
    async def requeue_stalled(self, max_deliveries: int) -> StalledReport:
        """Return expired leases to the queue, parking poison jobs as dead."""
        ...


class SupabaseJobQueue(JobDispatcher):
    """Durable job queue stored in the ``job_queue`` table."""

    TABLE = "job_queue"

    def __init__(
        self,
        supabase_client: Any,
        lease_duration_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the queue.

        Args:
            supabase_client: Supabase client instance
            lease_duration_seconds: How long a lease lasts without renewal
            clock: Source of the current time (overridable in tests)
        """
        self.supabase = supabase_client
        self.lease_duration = timedelta(seconds=lease_duration_seconds)
        self.clock = clock

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
            raise QueueError(f"Failed to {action}: {e}") from e

    async def _get_row(self, job_id: str) -> Optional[Dict[str, Any]]:
        result = self._execute(
            self._table().select("*").eq("job_id", job_id), f"read queue row for {job_id}"
        )
        return result.data[0] if result.data else None

    def _lease_from_row(self, row: Dict[str, Any]) -> Lease:
        return Lease(
            job_id=row["job_id"],
            token=row["lease_token"],
            owner=row["lease_owner"],
            expires_at=datetime.fromisoformat(row["lease_expires_at"]),
            deliveries=row.get("deliveries") or 0,
            input=row.get("input") or {},
        )

    def _claim_data(self, owner: str, deliveries: int) -> Dict[str, Any]:
        now = self.clock()
        return {
            "state": "leased",
            "lease_token": uuid4().hex,
            "lease_owner": owner,
            "lease_expires_at": (now + self.lease_duration).isoformat(),
            "deliveries": deliveries,
            "updated_at": now.isoformat(),
        }

    def _lease_expired(self, row: Dict[str, Any]) -> bool:
        expires = row.get("lease_expires_at")
        if not expires:
            return True
        return self.clock() >= datetime.fromisoformat(expires)

    # ==================== PRODUCER ====================

    async def enqueue(self, job_id: str, job_input: Dict[str, Any]) -> None:
        """
        Make a job visible to consumers.

        Enqueueing a job that already has a ready or leased message is a no-op;
        a dead message is revived with a fresh delivery count.
        """
        existing = await self._get_row(job_id)
        now = self.clock().isoformat()

        if existing is None:
            row = {
                "job_id": job_id,
                "input": job_input,
                "state": "ready",
                "lease_token": None,
                "lease_owner": None,
                "lease_expires_at": None,
                "deliveries": 0,
                "enqueued_at": now,
                "updated_at": now,
            }
            query = self._table().upsert(row, on_conflict="job_id", ignore_duplicates=True)
            self._execute(query, f"enqueue {job_id}")
            logger.info(f"Enqueued job {job_id}")
            return

        if existing["state"] == "dead":
            query = (
                self._table()
                .update({"state": "ready", "deliveries": 0, "updated_at": now})
                .eq("job_id", job_id)
                .eq("state", "dead")
            )
            self._execute(query, f"revive {job_id}")
            logger.info(f"Revived dead queue message for job {job_id}")
            return

        logger.debug(f"Job {job_id} already queued ({existing['state']})")

    # ==================== CONSUMER ====================

    async def consume(self, owner: str) -> Optional[Lease]:
        """Claim the oldest ready message, skipping any lost to another worker."""
        query = (
            self._table()
            .select("*")
            .eq("state", "ready")
            .order("enqueued_at", desc=False)
            .limit(10)
        )
        candidates = self._execute(query, "poll queue").data or []

        for row in candidates:
            claim = self._claim_data(owner, (row.get("deliveries") or 0) + 1)
            update = (
                self._table()
                .update(claim)
                .eq("job_id", row["job_id"])
                .eq("state", "ready")
            )
            result = self._execute(update, f"lease {row['job_id']}")
            if result.data:
                lease = self._lease_from_row(result.data[0])
                logger.info(
                    f"Worker {owner} leased job {lease.job_id} (delivery {lease.deliveries})"
                )
                return lease

        return None

    async def acquire(self, job_id: str, owner: str) -> Lease:
        """
        Take the per-job advisory lock for an out-of-band tick.

        Raises:
            Busy: If another holder has a live lease on the job
        """
        row = await self._get_row(job_id)

        if row is None:
            now = self.clock().isoformat()
            claim = self._claim_data(owner, 0)
            claim.update({"job_id": job_id, "input": {}, "enqueued_at": now})
            try:
                result = self._table().insert(claim).execute()
            except Exception as e:
                # Lost an insert race; someone else holds the job now
                logger.info(f"Advisory lock race on {job_id}: {e}")
                raise Busy(job_id) from e
            if not result.data:
                raise Busy(job_id)
            return self._lease_from_row(result.data[0])

        update = self._table().update(self._claim_data(owner, row.get("deliveries") or 0))
        update = update.eq("job_id", job_id)
        if row["state"] == "leased":
            if not self._lease_expired(row):
                raise Busy(job_id)
            update = update.eq("lease_token", row["lease_token"])
        else:
            update = update.eq("state", row["state"])

        result = self._execute(update, f"acquire {job_id}")
        if not result.data:
            raise Busy(job_id)
        return self._lease_from_row(result.data[0])

    async def renew(self, lease: Lease) -> Lease:
        """
        Extend a lease that is still ours and still live.

        Raises:
            LeaseExpired: If the lease ran out or was taken over
        """
        now = self.clock()
        if lease.expired(now):
            raise LeaseExpired(lease.job_id)

        query = (
            self._table()
            .update(
                {
                    "lease_expires_at": (now + self.lease_duration).isoformat(),
                    "updated_at": now.isoformat(),
                }
            )
            .eq("job_id", lease.job_id)
            .eq("lease_token", lease.token)
            .eq("state", "leased")
        )
        result = self._execute(query, f"renew lease on {lease.job_id}")
        if not result.data:
            raise LeaseExpired(lease.job_id)
        return self._lease_from_row(result.data[0])

    async def is_valid(self, lease: Lease) -> bool:
        row = await self._get_row(lease.job_id)
        if row is None or row["state"] != "leased":
            return False
        if row.get("lease_token") != lease.token:
            return False
        return not self._lease_expired(row)

    async def ack(self, lease: Lease) -> None:
        query = (
            self._table()
            .delete()
            .eq("job_id", lease.job_id)
            .eq("lease_token", lease.token)
        )
        result = self._execute(query, f"ack {lease.job_id}")
        if not result.data:
            logger.warning(f"Ack for job {lease.job_id} ignored: lease no longer held")
        else:
            logger.debug(f"Acked job {lease.job_id}")

    async def release(self, lease: Lease) -> None:
        query = (
            self._table()
            .update(
                {
                    "state": "ready",
                    "lease_token": None,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "updated_at": self.clock().isoformat(),
                }
            )
            .eq("job_id", lease.job_id)
            .eq("lease_token", lease.token)
        )
        self._execute(query, f"release {lease.job_id}")
        logger.debug(f"Released job {lease.job_id}")

    # ==================== STALL DETECTION ====================

    async def requeue_stalled(self, max_deliveries: int) -> StalledReport:
        """
        Return expired leases to ``ready``.

        Messages already delivered ``max_deliveries`` times are parked as
        ``dead`` instead so a poison job cannot loop forever.
        """
        now = self.clock()
        query = (
            self._table()
            .select("*")
            .eq("state", "leased")
            .lt("lease_expires_at", now.isoformat())
        )
        stalled = self._execute(query, "find stalled leases").data or []

        report = StalledReport()
        for row in stalled:
            deliveries = row.get("deliveries") or 0
            if deliveries >= max_deliveries:
                data: Dict[str, Any] = {"state": "dead"}
            else:
                data = {"state": "ready"}
            data.update(
                {
                    "lease_token": None,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "updated_at": now.isoformat(),
                }
            )
            update = (
                self._table()
                .update(data)
                .eq("job_id", row["job_id"])
                .eq("lease_token", row["lease_token"])
            )
            result = self._execute(update, f"requeue {row['job_id']}")
            if not result.data:
                continue
            if data["state"] == "dead":
                report.dead.append(row["job_id"])
                logger.error(
                    f"Job {row['job_id']} stalled after {deliveries} deliveries; parked as dead"
                )
            else:
                report.requeued.append(row["job_id"])
                logger.warning(
                    f"Lease on job {row['job_id']} held by {row.get('lease_owner')} expired; requeued"
                )

        return report
