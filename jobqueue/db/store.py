"""
Queue store facade.

Every public method runs exactly one database transaction against a fresh
session, so callers never share session state. Transient connectivity
failures are retried locally with exponential backoff and surface as
StoreUnavailable once the retries are spent.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import Clock, utc_now
from jobqueue.config import Settings, get_settings
from jobqueue.constants import AttemptOutcome, JobPriority, JobState
from jobqueue.db.leadership import LeadershipRepository
from jobqueue.db.models import Job, JobAttempt, ScheduleState, SchedulerLease, WorkerRecord
from jobqueue.db.repository import JobRepository
from jobqueue.db.schedules import ScheduleRepository
from jobqueue.db.workers import WorkerRepository
from jobqueue.errors import (
    AlreadyLeased,
    DuplicateJob,
    LeadershipLost,
    StoreUnavailable,
)

if TYPE_CHECKING:
    from jobqueue.scheduler.leader import LeaderFence

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, InterfaceError)


class QueueStore:
    """Transactional entry point to the shared job store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.2,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._retry_attempts = max(1, retry_attempts)
        self._retry_base_delay = retry_base_delay

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> "QueueStore":
        settings = settings or get_settings()
        return cls(
            session_factory,
            clock=clock,
            retry_attempts=settings.store_retry_attempts,
            retry_base_delay=settings.store_retry_base_delay_seconds,
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        for attempt in range(1, self._retry_attempts + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await fn(session)
            except TRANSIENT_ERRORS as e:
                if attempt >= self._retry_attempts:
                    logger.error(
                        "Store unavailable",
                        extra={"operation": operation, "attempts": attempt, "error": str(e)},
                    )
                    raise StoreUnavailable(f"{operation} failed after {attempt} attempts: {e}") from e
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Transient store error, retrying",
                    extra={"operation": operation, "attempt": attempt, "delay": delay, "error": str(e)},
                )
                await asyncio.sleep(delay)
        raise StoreUnavailable(operation)

    async def _raise_duplicate(self, queue: str, dedup_key: str | None, error: IntegrityError) -> None:
        if dedup_key is None:
            raise error
        existing = await self._run(
            "dedup_lookup",
            lambda s: JobRepository(s, self._clock).get_active_by_dedup_key(queue, dedup_key),
        )
        if existing is None:
            raise error
        raise DuplicateJob(existing.id, dedup_key) from None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job, fence: "LeaderFence | None" = None) -> Job:
        """
        Insert a job, optionally only while a leadership lease is held.

        Raises:
            DuplicateJob: A live job in the queue already holds the dedup key.
            LeadershipLost: The fence no longer matches the stored lease.
        """

        async def op(session: AsyncSession) -> Job:
            if fence is not None:
                leadership = LeadershipRepository(session, self._clock)
                if not await leadership.holds(fence.lease_name, fence.holder, fence.token):
                    raise LeadershipLost(
                        f"{fence.holder} no longer holds lease {fence.lease_name} (token {fence.token})"
                    )
            return await JobRepository(session, self._clock).insert_job(job)

        try:
            return await self._run("enqueue", op)
        except IntegrityError as e:
            # Lost a race against a concurrent insert with the same dedup key
            await self._raise_duplicate(job.queue, job.dedup_key, e)
            raise

    async def lease(
        self,
        queue_names: Sequence[str],
        lease_duration: timedelta,
        owner: str,
    ) -> Job | None:
        return await self._run(
            "lease",
            lambda s: JobRepository(s, self._clock).lease(queue_names, lease_duration, owner),
        )

    async def ack(self, job_id: UUID, owner: str, result: dict[str, Any] | None = None) -> Job:
        return await self._run(
            "ack",
            lambda s: JobRepository(s, self._clock).ack(job_id, owner, result),
        )

    async def nack(
        self,
        job_id: UUID,
        owner: str,
        next_eligible_at: datetime,
        error: str | None = None,
        outcome: AttemptOutcome = AttemptOutcome.FAILED,
    ) -> Job:
        return await self._run(
            "nack",
            lambda s: JobRepository(s, self._clock).nack(
                job_id, owner, next_eligible_at, error, outcome
            ),
        )

    async def dead_letter(
        self,
        job_id: UUID,
        owner: str,
        reason: str,
        outcome: AttemptOutcome = AttemptOutcome.FAILED,
    ) -> Job:
        return await self._run(
            "dead_letter",
            lambda s: JobRepository(s, self._clock).dead_letter(job_id, owner, reason, outcome),
        )

    async def reclaim_expired_leases(self) -> int:
        """Return expired leases to the queue; returns how many were reclaimed."""
        jobs = await self._run(
            "reclaim_expired_leases",
            lambda s: JobRepository(s, self._clock).reclaim_expired_leases(),
        )
        return len(jobs)

    async def extend_lease(self, job_id: UUID, owner: str, lease_duration: timedelta) -> bool:
        return await self._run(
            "extend_lease",
            lambda s: JobRepository(s, self._clock).extend_lease(job_id, owner, lease_duration),
        )

    async def cancel(self, job_id: UUID) -> Job:
        """
        Cancel a pending or delayed job.

        Raises:
            NotFound: The job does not exist.
            AlreadyLeased: The job is in flight; it was marked cancel_requested.
            InvalidJobState: The job already finished.
        """
        job, cancelled = await self._run(
            "cancel",
            lambda s: JobRepository(s, self._clock).cancel(job_id),
        )
        if not cancelled:
            raise AlreadyLeased(job_id)
        return job

    async def retry_job(
        self,
        job_id: UUID,
        from_states: Iterable[JobState] = (JobState.DEAD_LETTERED,),
    ) -> Job:
        states = tuple(from_states)
        try:
            return await self._run(
                "retry_job",
                lambda s: JobRepository(s, self._clock).retry_job(job_id, states),
            )
        except IntegrityError as e:
            job = await self.get_job(job_id)
            await self._raise_duplicate(job.queue, job.dedup_key, e)
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> Job | None:
        return await self._run(
            "get_job",
            lambda s: JobRepository(s, self._clock).get_job(job_id),
        )

    async def list_jobs(
        self,
        queue: str | None = None,
        state: JobState | None = None,
        handler: str | None = None,
        correlation_id: str | None = None,
        tag: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        return await self._run(
            "list_jobs",
            lambda s: JobRepository(s, self._clock).list_jobs(
                queue=queue,
                state=state,
                handler=handler,
                correlation_id=correlation_id,
                tag=tag,
                limit=limit,
                offset=offset,
            ),
        )

    async def list_dead_lettered(
        self,
        queue: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        return await self._run(
            "list_dead_lettered",
            lambda s: JobRepository(s, self._clock).list_dead_lettered(queue, limit, offset),
        )

    async def get_attempts(self, job_id: UUID) -> Sequence[JobAttempt]:
        return await self._run(
            "get_attempts",
            lambda s: JobRepository(s, self._clock).get_attempts(job_id),
        )

    async def queue_counts(self) -> dict[str, dict[JobState, int]]:
        return await self._run(
            "queue_counts",
            lambda s: JobRepository(s, self._clock).queue_counts(),
        )

    async def priority_breakdown(self, queue: str) -> dict[JobPriority, dict[JobState, int]]:
        return await self._run(
            "priority_breakdown",
            lambda s: JobRepository(s, self._clock).priority_breakdown(queue),
        )

    # ------------------------------------------------------------------
    # Leadership
    # ------------------------------------------------------------------

    async def acquire_leadership(
        self,
        name: str,
        holder: str,
        ttl: timedelta,
    ) -> SchedulerLease | None:
        try:
            return await self._run(
                "acquire_leadership",
                lambda s: LeadershipRepository(s, self._clock).acquire(name, holder, ttl),
            )
        except IntegrityError:
            # Another instance inserted the lease row first
            return None

    async def release_leadership(self, name: str, holder: str) -> bool:
        return await self._run(
            "release_leadership",
            lambda s: LeadershipRepository(s, self._clock).release(name, holder),
        )

    async def get_leadership(self, name: str) -> SchedulerLease | None:
        return await self._run(
            "get_leadership",
            lambda s: LeadershipRepository(s, self._clock).get(name),
        )

    # ------------------------------------------------------------------
    # Scheduled definition state
    # ------------------------------------------------------------------

    async def _upsert(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            return await self._run(operation, fn)
        except IntegrityError:
            # Another instance created the row first; the second pass updates it
            return await self._run(operation, fn)

    async def schedule_states(self, names: Iterable[str] | None = None) -> dict[str, ScheduleState]:
        names = list(names) if names is not None else None
        return await self._run(
            "schedule_states",
            lambda s: ScheduleRepository(s, self._clock).get_all(names),
        )

    async def set_schedule_enabled(self, name: str, enabled: bool) -> ScheduleState:
        return await self._upsert(
            "set_schedule_enabled",
            lambda s: ScheduleRepository(s, self._clock).set_enabled(name, enabled),
        )

    async def record_schedule_fire(
        self,
        name: str,
        fire_time: datetime,
        default_enabled: bool = True,
    ) -> ScheduleState:
        return await self._upsert(
            "record_schedule_fire",
            lambda s: ScheduleRepository(s, self._clock).record_fire(name, fire_time, default_enabled),
        )

    # ------------------------------------------------------------------
    # Worker registry
    # ------------------------------------------------------------------

    async def register_worker(self, worker_id: str, queues: Sequence[str], concurrency: int) -> WorkerRecord:
        return await self._upsert(
            "register_worker",
            lambda s: WorkerRepository(s, self._clock).register(worker_id, queues, concurrency),
        )

    async def worker_heartbeat(
        self,
        worker_id: str,
        active_jobs: int,
        jobs_processed: int,
        jobs_failed: int,
        shutting_down: bool = False,
    ) -> bool:
        return await self._run(
            "worker_heartbeat",
            lambda s: WorkerRepository(s, self._clock).heartbeat(
                worker_id, active_jobs, jobs_processed, jobs_failed, shutting_down
            ),
        )

    async def unregister_worker(self, worker_id: str) -> bool:
        return await self._run(
            "unregister_worker",
            lambda s: WorkerRepository(s, self._clock).unregister(worker_id),
        )

    async def list_workers(self, queue: str | None = None) -> list[WorkerRecord]:
        return await self._run(
            "list_workers",
            lambda s: WorkerRepository(s, self._clock).list_workers(queue),
        )

    async def cleanup_stale_workers(self, stale_after: timedelta) -> list[str]:
        """Drop workers that stopped heartbeating; returns their ids."""
        return await self._run(
            "cleanup_stale_workers",
            lambda s: WorkerRepository(s, self._clock).cleanup_stale(stale_after),
        )
