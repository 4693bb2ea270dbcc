"""
Worker registry repository.

Each worker pool keeps one row alive by heartbeating it. Rows whose
heartbeat is older than the stale threshold belong to crashed pools and
are removed by the reaper.
"""

import logging
from collections.abc import Sequence
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import Clock, utc_now
from jobqueue.db.models import WorkerRecord

logger = logging.getLogger(__name__)


class WorkerRepository:
    """Session-bound operations on the workers table. Never commits."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self._session = session
        self._clock = clock

    async def get(self, worker_id: str) -> WorkerRecord | None:
        stmt = (
            select(WorkerRecord)
            .where(WorkerRecord.worker_id == worker_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def register(self, worker_id: str, queues: Sequence[str], concurrency: int) -> WorkerRecord:
        """
        Register a worker pool, replacing any row left by a previous run with the same id.

        Args:
            worker_id: Unique worker identifier.
            queues: Queue names the pool services.
            concurrency: Number of execution slots.

        Returns:
            The registered worker row.
        """
        now = self._clock()
        record = await self.get(worker_id)
        if record is None:
            record = WorkerRecord(worker_id=worker_id)
            self._session.add(record)

        record.queues = list(queues)
        record.concurrency = concurrency
        record.started_at = now
        record.last_heartbeat_at = now
        record.active_jobs = 0
        record.jobs_processed = 0
        record.jobs_failed = 0
        record.shutting_down = False
        await self._session.flush()

        logger.info(
            "Worker registered",
            extra={"worker_id": worker_id, "queues": list(queues), "concurrency": concurrency},
        )
        return record

    async def heartbeat(
        self,
        worker_id: str,
        active_jobs: int,
        jobs_processed: int,
        jobs_failed: int,
        shutting_down: bool = False,
    ) -> bool:
        """
        Refresh a worker's heartbeat and counters.

        Returns:
            False if the worker is not registered (e.g. removed as stale).
        """
        record = await self.get(worker_id)
        if record is None:
            logger.warning("Heartbeat from unknown worker", extra={"worker_id": worker_id})
            return False

        record.last_heartbeat_at = self._clock()
        record.active_jobs = active_jobs
        record.jobs_processed = jobs_processed
        record.jobs_failed = jobs_failed
        record.shutting_down = shutting_down
        await self._session.flush()
        return True

    async def unregister(self, worker_id: str) -> bool:
        result = await self._session.execute(
            delete(WorkerRecord).where(WorkerRecord.worker_id == worker_id)
        )
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Worker unregistered", extra={"worker_id": worker_id})
        return removed

    async def list_workers(self, queue: str | None = None) -> list[WorkerRecord]:
        """All registered workers, optionally only those servicing queue."""
        stmt = select(WorkerRecord).order_by(WorkerRecord.worker_id)
        result = await self._session.execute(stmt)
        workers = list(result.scalars().all())
        if queue is not None:
            workers = [worker for worker in workers if queue in (worker.queues or [])]
        return workers

    async def cleanup_stale(self, stale_after: timedelta) -> list[str]:
        """
        Remove workers whose last heartbeat is older than stale_after.

        Returns:
            The removed worker ids.
        """
        cutoff = self._clock() - stale_after
        result = await self._session.execute(
            select(WorkerRecord.worker_id).where(WorkerRecord.last_heartbeat_at < cutoff)
        )
        stale_ids = list(result.scalars().all())
        if stale_ids:
            await self._session.execute(
                delete(WorkerRecord).where(WorkerRecord.worker_id.in_(stale_ids))
            )
            for worker_id in stale_ids:
                logger.warning("Removed stale worker", extra={"worker_id": worker_id})
        return stale_ids
