"""Queue consumer and stalled-lease monitor.

Both run as asyncio tasks with explicit ``start()``/``stop()`` and are wired
into the application lifespan.
"""

import asyncio
import logging
from typing import List, Optional
from uuid import uuid4

from chronicle.models.job import TickResult
from chronicle.models.queue import Lease, StalledReport
from chronicle.services.dispatcher import JobDispatcher
from chronicle.services.tick import TickHandler
from chronicle.utils.errors import AlreadyTerminal, Busy, ChronicleError, NotFound

logger = logging.getLogger(__name__)


class Worker:
    """Pulls leased jobs off the queue and ticks them."""

    def __init__(
        self,
        queue: JobDispatcher,
        tick_handler: TickHandler,
        name: Optional[str] = None,
        concurrency: int = 1,
        poll_interval: float = 1.0,
    ) -> None:
        """
        Initialize the Worker.

        Args:
            queue: Dispatcher to consume from
            tick_handler: Handler that advances each delivered job
            name: Lease owner name (random if omitted)
            concurrency: Number of jobs processed at once
            poll_interval: Seconds to wait when the queue is empty
        """
        self.queue = queue
        self.tick_handler = tick_handler
        self.name = name or f"worker-{uuid4().hex[:8]}"
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self._tasks: List[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(slot)) for slot in range(self.concurrency)
        ]
        logger.info(f"Worker {self.name} started with concurrency {self.concurrency}")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info(f"Worker {self.name} stopped")

    async def _worker_loop(self, slot: int) -> None:
        owner = f"{self.name}/{slot}"
        while self._running:
            try:
                lease = await self.queue.consume(owner)
            except ChronicleError as e:
                logger.error(f"Worker {owner} failed to poll queue: {e}")
                await asyncio.sleep(self.poll_interval)
                continue

            if lease is None:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                await self.process(lease)
            except ChronicleError as e:
                # The lease expires on its own and the monitor redelivers
                logger.error(f"Worker {owner} could not settle job {lease.job_id}: {e}")

    async def process(self, lease: Lease) -> Optional[TickResult]:
        """
        Tick one delivered job and settle its queue message.

        Terminal jobs are acked; an aborted tick leaves the lease to expire so
        the stalled-lease monitor can redeliver it; anything else is released.
        """
        job_id = lease.job_id
        try:
            result = await self.tick_handler.tick(job_id, triggered_by="worker", lease=lease)
        except (AlreadyTerminal, NotFound) as e:
            logger.info(f"Dropping queue message for job {job_id}: {e}")
            await self.queue.ack(lease)
            return None
        except Busy:
            logger.info(f"Job {job_id} is busy elsewhere; releasing delivery")
            await self.queue.release(lease)
            return None
        except ChronicleError as e:
            logger.error(f"Tick for job {job_id} (delivery {lease.deliveries}) errored: {e}")
            await self.queue.release(lease)
            return None

        if result.status in ("succeeded", "failed"):
            await self.queue.ack(lease)
        elif result.aborted:
            logger.warning(f"Worker left job {job_id} at step {result.step}; lease no longer held")
        else:
            await self.queue.release(lease)
        return result

    async def run_once(self) -> Optional[TickResult]:
        """Consume and process a single job, if one is ready."""
        lease = await self.queue.consume(self.name)
        if lease is None:
            return None
        return await self.process(lease)


class StalledLeaseMonitor:
    """Periodically returns expired leases to the queue."""

    def __init__(
        self,
        queue: JobDispatcher,
        interval_seconds: float = 60,
        max_deliveries: int = 5,
    ) -> None:
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.max_deliveries = max_deliveries
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def check(self) -> StalledReport:
        report = await self.queue.requeue_stalled(self.max_deliveries)
        if report.requeued or report.dead:
            logger.info(f"Stalled leases: {len(report.requeued)} requeued, {len(report.dead)} dead")
        return report

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.check()
            except ChronicleError as e:
                logger.error(f"Stalled lease check failed: {e}")
