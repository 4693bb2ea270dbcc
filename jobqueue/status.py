"""
Read-only status queries backing the queue, stats, throughput, activity,
worker and dashboard endpoints, and the pending/active gauges.
"""

import logging
from datetime import timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import Clock, utc_now
from jobqueue.constants import JobState, ThroughputPeriod, WorkerStatus
from jobqueue.db.models import Job, JobAttempt, WorkerRecord
from jobqueue.db.repository import JobRepository
from jobqueue.db.workers import WorkerRepository
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.types.api import (
    ActivityEntry,
    DashboardResponse,
    QueueStatsResponse,
    QueueSummary,
    ThroughputBucket,
    ThroughputResponse,
    WorkerHealth,
)

logger = logging.getLogger(__name__)

# Bucket count and width per throughput period
THROUGHPUT_BUCKETS: dict[ThroughputPeriod, tuple[int, timedelta]] = {
    ThroughputPeriod.LAST_HOUR: (12, timedelta(minutes=5)),
    ThroughputPeriod.LAST_24_HOURS: (24, timedelta(hours=1)),
    ThroughputPeriod.LAST_7_DAYS: (7, timedelta(days=1)),
}

DEFAULT_STALE_AFTER = timedelta(seconds=90)


def _summary(name: str, counts: dict[JobState, int]) -> QueueSummary:
    return QueueSummary(
        name=name,
        pending=counts.get(JobState.PENDING, 0),
        delayed=counts.get(JobState.DELAYED, 0),
        leased=counts.get(JobState.LEASED, 0),
        completed=counts.get(JobState.COMPLETED, 0),
        dead_lettered=counts.get(JobState.DEAD_LETTERED, 0),
        cancelled=counts.get(JobState.CANCELLED, 0),
        total=sum(counts.values()),
    )


class StatusService:
    """Aggregate views over the jobs table, all read inside the caller's session."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self._session = session
        self._clock = clock
        self._repo = JobRepository(session, clock)

    async def list_queues(self) -> list[QueueSummary]:
        """List every queue that holds at least one job, with per-state counts."""
        counts = await self._repo.queue_counts()
        return [_summary(name, counts[name]) for name in sorted(counts)]

    async def queue_stats(self, name: str) -> QueueStatsResponse:
        """Per-priority breakdown of one queue. Unknown queues report zeros."""
        counts = await self._repo.queue_counts()
        breakdown = await self._repo.priority_breakdown(name)

        oldest = await self._session.execute(
            select(func.min(Job.scheduled_at)).where(
                and_(Job.queue == name, Job.state == JobState.PENDING)
            )
        )

        return QueueStatsResponse(
            name=name,
            counts=_summary(name, counts.get(name, {})),
            by_priority=breakdown,
            oldest_pending_at=oldest.scalar(),
        )

    async def dashboard(self) -> DashboardResponse:
        """Aggregate counters across all queues."""
        now = self._clock()
        since = now - timedelta(hours=1)

        counts = await self._repo.queue_counts()
        by_state: dict[JobState, int] = {state: 0 for state in JobState}
        for queue_counts in counts.values():
            for state, count in queue_counts.items():
                by_state[state] += count

        async def count_since(column, state: JobState | None = None) -> int:
            filters = [column >= since]
            if state is not None:
                filters.append(Job.state == state)
            result = await self._session.execute(
                select(func.count()).select_from(Job).where(and_(*filters))
            )
            return result.scalar() or 0

        return DashboardResponse(
            total_jobs=sum(by_state.values()),
            queues=len(counts),
            by_state=by_state,
            enqueued_last_hour=await count_since(Job.created_at),
            completed_last_hour=await count_since(Job.completed_at, JobState.COMPLETED),
            dead_lettered_last_hour=await count_since(Job.completed_at, JobState.DEAD_LETTERED),
            generated_at=now,
        )

    async def refresh_gauges(self, metrics: MetricsCollector) -> None:
        """Set the pending and active gauges for every known queue."""
        counts = await self._repo.queue_counts()
        for name, queue_counts in counts.items():
            metrics.update_queue_gauges(
                name,
                pending=queue_counts.get(JobState.PENDING, 0) + queue_counts.get(JobState.DELAYED, 0),
                active=queue_counts.get(JobState.LEASED, 0),
            )
        logger.debug("Refreshed queue gauges", extra={"queues": len(counts)})

    async def throughput(
        self,
        queue: str,
        period: ThroughputPeriod = ThroughputPeriod.LAST_HOUR,
    ) -> ThroughputResponse:
        """
        Completed and dead-lettered jobs of one queue over a period.

        Jobs are bucketed by completion time; the last bucket ends now.
        Success rate is 100 when nothing finished.
        """
        now = self._clock()
        bucket_count, width = THROUGHPUT_BUCKETS[period]
        start = now - width * bucket_count

        buckets = [
            ThroughputBucket(start=start + width * i, end=start + width * (i + 1))
            for i in range(bucket_count)
        ]

        result = await self._session.execute(
            select(Job.state, Job.completed_at).where(
                and_(
                    Job.queue == queue,
                    Job.state.in_((JobState.COMPLETED, JobState.DEAD_LETTERED)),
                    Job.completed_at > start,
                    Job.completed_at <= now,
                )
            )
        )
        for state, completed_at in result.all():
            bucket = buckets[min(int((completed_at - start) / width), bucket_count - 1)]
            if state == JobState.COMPLETED:
                bucket.completed += 1
            else:
                bucket.failed += 1

        completed = sum(bucket.completed for bucket in buckets)
        failed = sum(bucket.failed for bucket in buckets)
        total = completed + failed

        return ThroughputResponse(
            queue=queue,
            period=period,
            total_processed=total,
            completed=completed,
            failed=failed,
            avg_per_second=total / (now - start).total_seconds(),
            success_rate=(completed / total * 100.0) if total else 100.0,
            buckets=buckets,
        )

    async def recent_activity(self, limit: int = 20, queue: str | None = None) -> list[ActivityEntry]:
        """The most recently finished execution attempts, newest first."""
        stmt = (
            select(JobAttempt, Job.queue, Job.handler)
            .join(Job, Job.id == JobAttempt.job_id)
            .order_by(JobAttempt.finished_at.desc(), JobAttempt.id.desc())
            .limit(limit)
        )
        if queue is not None:
            stmt = stmt.where(Job.queue == queue)

        result = await self._session.execute(stmt)
        return [
            ActivityEntry(
                job_id=attempt.job_id,
                queue=job_queue,
                handler=handler,
                attempt=attempt.attempt,
                outcome=attempt.outcome,
                worker_id=attempt.worker_id,
                timestamp=attempt.finished_at,
                duration_ms=attempt.duration_ms,
                error=attempt.error,
            )
            for attempt, job_queue, handler in result.all()
        ]

    def _worker_health(self, worker: WorkerRecord, stale_after: timedelta) -> WorkerHealth:
        age = self._clock() - worker.last_heartbeat_at
        if age >= stale_after:
            worker_status = WorkerStatus.STALE
        elif worker.shutting_down:
            worker_status = WorkerStatus.SHUTTING_DOWN
        else:
            worker_status = WorkerStatus.ACTIVE

        return WorkerHealth(
            worker_id=worker.worker_id,
            status=worker_status,
            queues=list(worker.queues or []),
            concurrency=worker.concurrency,
            started_at=worker.started_at,
            last_heartbeat_at=worker.last_heartbeat_at,
            heartbeat_age_seconds=max(age.total_seconds(), 0.0),
            active_jobs=worker.active_jobs,
            jobs_processed=worker.jobs_processed,
            jobs_failed=worker.jobs_failed,
        )

    async def worker_health(
        self,
        queue: str | None = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> list[WorkerHealth]:
        """Registered workers with a liveness status derived from heartbeat age."""
        workers = await WorkerRepository(self._session, self._clock).list_workers(queue)
        return [self._worker_health(worker, stale_after) for worker in workers]
