"""
Job repository for database operations.
Implements the core data access patterns for the queue store.
"""

import json
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import String, and_, case, cast, func, select, type_coerce, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import Clock, utc_now
from jobqueue.constants import (
    ACTIVE_STATES,
    PRIORITY_WEIGHTS,
    AttemptOutcome,
    JobPriority,
    JobState,
)
from jobqueue.db.models import Job, JobAttempt
from jobqueue.errors import (
    DuplicateJob,
    InvalidJobState,
    NotFound,
    NotLeased,
)

logger = logging.getLogger(__name__)

# Compare-and-set attempts per lease call before giving up for this poll
LEASE_CAS_ATTEMPTS = 5

_PRIORITY_RANK = case(
    *[(Job.priority == priority, weight) for priority, weight in PRIORITY_WEIGHTS.items()],
    else_=0,
)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job insertion with active deduplication
    - Lease acquisition with FOR UPDATE SKIP LOCKED and a compare-and-set update
    - Ack / nack / dead-letter transitions with attempt history
    - Lease expiry reclamation
    - Cancellation and manual retry

    Methods never commit; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            clock: Time source for every timestamp the repository writes or compares.
        """
        self._session = session
        self._clock = clock

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def insert_job(self, job: Job) -> Job:
        """
        Insert a new job as PENDING or DELAYED.

        Args:
            job: A transient Job with routing, payload and scheduling fields set.

        Returns:
            The persisted Job.

        Raises:
            DuplicateJob: If a live job in the same queue holds the dedup key.
        """
        now = self._clock()
        if job.created_at is None:
            job.created_at = now
        if job.scheduled_at is None:
            job.scheduled_at = job.created_at
        job.updated_at = now
        job.attempts = 0
        job.state = JobState.PENDING if job.scheduled_at <= now else JobState.DELAYED

        if job.dedup_key is not None:
            existing = await self.get_active_by_dedup_key(job.queue, job.dedup_key)
            if existing is not None:
                logger.info(
                    "Rejected duplicate job",
                    extra={"job_id": str(existing.id), "dedup_key": job.dedup_key},
                )
                raise DuplicateJob(existing.id, job.dedup_key)

        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={
                "job_id": str(job.id),
                "queue": job.queue,
                "handler": job.handler,
                "state": job.state.value,
            },
        )
        return job

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_by_dedup_key(self, queue: str, dedup_key: str) -> Job | None:
        """Get the live (pending, delayed or leased) job holding a dedup key."""
        stmt = select(Job).where(
            and_(
                Job.queue == queue,
                Job.dedup_key == dedup_key,
                Job.state.in_(ACTIVE_STATES),
            )
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def _lock_job(self, job_id: UUID) -> Job:
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFound(job_id)
        return job

    async def _lock_leased(self, job_id: UUID, owner: str) -> Job:
        job = await self._lock_job(job_id)
        if job.state != JobState.LEASED or job.lease_owner != owner:
            raise NotLeased(job_id, job.state.value, owner)
        return job

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def promote_due(self, queue_names: Sequence[str], now: datetime) -> int:
        """Move DELAYED jobs whose scheduled_at has passed into PENDING."""
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.queue.in_(queue_names),
                    Job.state == JobState.DELAYED,
                    Job.scheduled_at <= now,
                )
            )
            .values(state=JobState.PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def lease(
        self,
        queue_names: Sequence[str],
        lease_duration: timedelta,
        owner: str,
    ) -> Job | None:
        """
        Lease the highest-priority, earliest-eligible pending job.

        Uses FOR UPDATE SKIP LOCKED to avoid contention and a conditional
        UPDATE so a row can never be leased twice, even on backends that
        ignore row locks.

        Args:
            queue_names: Queues to consider.
            lease_duration: How long the lease stays valid without renewal.
            owner: Identifier of the leasing worker slot.

        Returns:
            The leased Job, or None if nothing is eligible.
        """
        if not queue_names:
            return None

        now = self._clock()
        promoted = await self.promote_due(queue_names, now)
        if promoted:
            logger.debug("Promoted delayed jobs", extra={"count": promoted})

        candidates = (
            select(Job)
            .where(
                and_(
                    Job.queue.in_(queue_names),
                    Job.state == JobState.PENDING,
                )
            )
            .order_by(_PRIORITY_RANK.desc(), Job.scheduled_at.asc(), Job.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )

        for _ in range(LEASE_CAS_ATTEMPTS):
            result = await self._session.execute(candidates)
            job = result.scalar_one_or_none()
            if job is None:
                return None

            claimed = await self._session.execute(
                update(Job)
                .where(and_(Job.id == job.id, Job.state == JobState.PENDING))
                .values(
                    state=JobState.LEASED,
                    lease_owner=owner,
                    lease_expires_at=now + lease_duration,
                    leased_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                await self._session.refresh(job)
                logger.info(
                    "Acquired lease",
                    extra={"job_id": str(job.id), "worker_id": owner, "queue": job.queue},
                )
                return job

        return None

    async def extend_lease(
        self,
        job_id: UUID,
        owner: str,
        lease_duration: timedelta,
    ) -> bool:
        """
        Extend the lease on a job (heartbeat).

        Returns:
            True if lease was extended, False otherwise.
        """
        now = self._clock()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.lease_owner == owner,
                    Job.state == JobState.LEASED,
                )
            )
            .values(lease_expires_at=now + lease_duration, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    # ------------------------------------------------------------------
    # Outcome transitions
    # ------------------------------------------------------------------

    def _record_attempt(
        self,
        job: Job,
        outcome: AttemptOutcome,
        now: datetime,
        error: str | None = None,
    ) -> JobAttempt:
        duration_ms = None
        if job.leased_at is not None:
            duration_ms = (now - job.leased_at).total_seconds() * 1000
        attempt = JobAttempt(
            job_id=job.id,
            attempt=job.attempts,
            worker_id=job.lease_owner,
            outcome=outcome,
            error=error,
            started_at=job.leased_at,
            finished_at=now,
            duration_ms=duration_ms,
        )
        self._session.add(attempt)
        return attempt

    @staticmethod
    def _clear_lease(job: Job) -> None:
        job.lease_owner = None
        job.lease_expires_at = None
        job.leased_at = None

    async def ack(self, job_id: UUID, owner: str, result: dict[str, Any] | None = None) -> Job:
        """
        Mark a leased job as successfully completed.

        Raises:
            NotFound: If the job does not exist.
            NotLeased: If the job is not leased by owner.
        """
        job = await self._lock_leased(job_id, owner)
        now = self._clock()

        job.attempts += 1
        self._record_attempt(job, AttemptOutcome.SUCCEEDED, now)
        job.state = JobState.COMPLETED
        job.completed_at = now
        job.updated_at = now
        job.result = result
        self._clear_lease(job)
        await self._session.flush()

        logger.info("Job completed successfully", extra={"job_id": str(job_id)})
        return job

    async def nack(
        self,
        job_id: UUID,
        owner: str,
        next_eligible_at: datetime,
        error: str | None = None,
        outcome: AttemptOutcome = AttemptOutcome.FAILED,
    ) -> Job:
        """
        Return a failed job to DELAYED for another attempt at next_eligible_at.

        A job whose cancellation was requested while it ran becomes CANCELLED
        instead of being rescheduled.

        Raises:
            NotFound: If the job does not exist.
            NotLeased: If the job is not leased by owner.
        """
        job = await self._lock_leased(job_id, owner)
        now = self._clock()

        job.attempts += 1
        self._record_attempt(job, outcome, now, error)
        job.last_error = error
        job.updated_at = now
        self._clear_lease(job)

        if job.cancel_requested:
            job.state = JobState.CANCELLED
            job.completed_at = now
            logger.info("Job cancelled after failed attempt", extra={"job_id": str(job_id)})
        else:
            job.state = JobState.DELAYED
            job.scheduled_at = next_eligible_at
            logger.info(
                "Job queued for retry",
                extra={
                    "job_id": str(job_id),
                    "attempts": job.attempts,
                    "scheduled_at": next_eligible_at.isoformat(),
                },
            )

        await self._session.flush()
        return job

    async def dead_letter(
        self,
        job_id: UUID,
        owner: str,
        reason: str,
        outcome: AttemptOutcome = AttemptOutcome.FAILED,
    ) -> Job:
        """
        Move a leased job to the dead-letter set.

        Raises:
            NotFound: If the job does not exist.
            NotLeased: If the job is not leased by owner.
        """
        job = await self._lock_leased(job_id, owner)
        now = self._clock()

        job.attempts += 1
        self._record_attempt(job, outcome, now, reason)
        self._clear_lease(job)
        job.last_error = reason
        job.completed_at = now
        job.updated_at = now

        if job.cancel_requested:
            job.state = JobState.CANCELLED
        else:
            job.state = JobState.DEAD_LETTERED
            job.dead_letter_reason = reason
            logger.warning(
                f"Job moved to DLQ after {job.attempts} attempts",
                extra={"job_id": str(job_id), "reason": reason},
            )

        await self._session.flush()
        return job

    async def reclaim_expired_leases(self) -> list[Job]:
        """
        Recover jobs with expired leases.

        This is called by the reaper to handle worker crashes. The missing
        ack/nack counts as one failed attempt: the job goes back to PENDING,
        or to the dead-letter set when that attempt was its last.

        Returns:
            The reclaimed jobs.
        """
        now = self._clock()
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.state == JobState.LEASED,
                    Job.lease_expires_at < now,
                )
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        jobs = list(result.scalars().all())

        for job in jobs:
            error = f"Lease expired (owner {job.lease_owner})"
            job.attempts += 1
            self._record_attempt(job, AttemptOutcome.LEASE_EXPIRED, now, error)
            self._clear_lease(job)
            job.last_error = error
            job.updated_at = now

            if job.cancel_requested:
                job.state = JobState.CANCELLED
                job.completed_at = now
            elif job.attempts >= job.max_attempts:
                job.state = JobState.DEAD_LETTERED
                job.dead_letter_reason = f"{error}; retries exhausted"
                job.completed_at = now
            else:
                job.state = JobState.PENDING

        if jobs:
            await self._session.flush()
            logger.info(f"Recovered {len(jobs)} jobs with expired leases")

        return jobs

    # ------------------------------------------------------------------
    # Cancellation and manual retry
    # ------------------------------------------------------------------

    async def cancel(self, job_id: UUID) -> tuple[Job, bool]:
        """
        Cancel a pending or delayed job.

        A leased job is only marked with cancel_requested; its next failure
        path will not reschedule it.

        Returns:
            Tuple of (Job, cancelled) where cancelled is False for leased jobs.

        Raises:
            NotFound: If the job does not exist.
            InvalidJobState: If the job already reached a terminal state.
        """
        job = await self._lock_job(job_id)
        now = self._clock()

        if job.state in (JobState.PENDING, JobState.DELAYED):
            job.state = JobState.CANCELLED
            job.completed_at = now
            job.updated_at = now
            await self._session.flush()
            logger.info("Job cancelled", extra={"job_id": str(job_id)})
            return job, True

        if job.state == JobState.LEASED:
            job.cancel_requested = True
            job.updated_at = now
            await self._session.flush()
            logger.info("Cancellation requested for leased job", extra={"job_id": str(job_id)})
            return job, False

        raise InvalidJobState(job_id, job.state.value, "pending, delayed or leased")

    async def retry_job(
        self,
        job_id: UUID,
        from_states: Iterable[JobState] = (JobState.DEAD_LETTERED,),
    ) -> Job:
        """
        Manually requeue a terminal job, resetting its attempt counter.

        Tags and correlation id are preserved.

        Raises:
            NotFound: If the job does not exist.
            InvalidJobState: If the job is not in one of from_states.
            DuplicateJob: If another live job now holds the same dedup key.
        """
        allowed = tuple(from_states)
        job = await self._lock_job(job_id)
        if job.state not in allowed:
            raise InvalidJobState(
                job_id,
                job.state.value,
                " or ".join(state.value for state in allowed),
            )

        if job.dedup_key is not None:
            existing = await self.get_active_by_dedup_key(job.queue, job.dedup_key)
            if existing is not None and existing.id != job.id:
                raise DuplicateJob(existing.id, job.dedup_key)

        now = self._clock()
        job.state = JobState.PENDING
        job.attempts = 0
        job.scheduled_at = now
        job.updated_at = now
        job.completed_at = None
        job.last_error = None
        job.dead_letter_reason = None
        job.cancel_requested = False
        await self._session.flush()

        logger.info("Job retried manually", extra={"job_id": str(job_id)})
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _has_tag(self, tag: str):
        if self._session.get_bind().dialect.name == "postgresql":
            return type_coerce(Job.tags, JSONB).contains([tag])
        # Tags are stored as JSON text elsewhere; match the encoded element
        return cast(Job.tags, String).contains(json.dumps(tag), autoescape=True)

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
        """
        List jobs with optional filtering. tag matches jobs carrying that exact tag.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if queue is not None:
            filters.append(Job.queue == queue)
        if state is not None:
            filters.append(Job.state == state)
        if handler is not None:
            filters.append(Job.handler == handler)
        if correlation_id is not None:
            filters.append(Job.correlation_id == correlation_id)
        if tag is not None:
            filters.append(self._has_tag(tag))

        count_stmt = select(func.count()).select_from(Job)
        stmt = select(Job).order_by(Job.created_at.desc(), Job.id).limit(limit).offset(offset)
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
            stmt = stmt.where(and_(*filters))

        total = (await self._session.execute(count_stmt)).scalar() or 0
        jobs = (await self._session.execute(stmt)).scalars().all()
        return jobs, total

    async def list_dead_lettered(
        self,
        queue: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """List dead-lettered jobs, newest first."""
        return await self.list_jobs(
            queue=queue,
            state=JobState.DEAD_LETTERED,
            limit=limit,
            offset=offset,
        )

    async def get_attempts(self, job_id: UUID) -> Sequence[JobAttempt]:
        """Get the attempt history of a job in execution order."""
        stmt = (
            select(JobAttempt)
            .where(JobAttempt.job_id == job_id)
            .order_by(JobAttempt.attempt.asc(), JobAttempt.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def queue_counts(self) -> dict[str, dict[JobState, int]]:
        """
        Count jobs per queue and state.

        Returns:
            Mapping of queue name -> state -> count (states with no jobs omitted).
        """
        stmt = select(Job.queue, Job.state, func.count()).group_by(Job.queue, Job.state)
        result = await self._session.execute(stmt)

        counts: dict[str, dict[JobState, int]] = {}
        for queue, state, count in result.all():
            counts.setdefault(queue, {})[JobState(state)] = count
        return counts

    async def priority_breakdown(self, queue: str) -> dict[JobPriority, dict[JobState, int]]:
        """Count jobs in one queue per priority and state."""
        stmt = (
            select(Job.priority, Job.state, func.count())
            .where(Job.queue == queue)
            .group_by(Job.priority, Job.state)
        )
        result = await self._session.execute(stmt)

        breakdown: dict[JobPriority, dict[JobState, int]] = {}
        for priority, state, count in result.all():
            breakdown.setdefault(JobPriority(priority), {})[JobState(state)] = count
        return breakdown
