"""
Worker pool for executing jobs.

The pool runs a fixed number of execution slots. Each slot leases one job
at a time from its queues, runs the registered handler under the job's
timeout, and records the outcome: ack on success, nack with backoff while
attempts remain, dead-letter otherwise.
"""

import asyncio
import logging
import os
import random
import signal
import time
from collections.abc import Sequence
from datetime import timedelta
from uuid import UUID

from jobqueue.clock import Clock
from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    SPAN_ACK_JOB,
    SPAN_EXECUTE_JOB,
    SPAN_LEASE_JOB,
    AttemptOutcome,
    JobState,
)
from jobqueue.db import QueueStore, close_db, get_session_factory, init_db
from jobqueue.db.models import Job
from jobqueue.errors import JobTimeoutError, NonRetryableError, NotLeased, StoreUnavailable, UnknownHandler
from jobqueue.observability.logging import bind_context, setup_logging, unbind_context
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import setup_tracing, start_span
from jobqueue.reaper.main import Reaper
from jobqueue.retry import RetryPolicy, next_delay
from jobqueue.types.job import JobContext, JobResult, LeaseInfo
from jobqueue.worker.handlers import (
    HandlerRegistration,
    HandlerRegistry,
    get_default_registry,
    load_handler_modules,
    normalize_result,
)

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Pool of execution slots that lease and run jobs.

    Features:
    - Strict priority leasing across the configured queues
    - Idle backoff: the poll interval doubles up to max_poll_interval
    - Heartbeat to extend leases for long-running jobs and keep the
      pool's row in the worker registry alive
    - Background reaper task reclaiming expired leases fleet-wide
    - Graceful shutdown on SIGTERM/SIGINT
    - Retry and DLQ handling
    """

    def __init__(
        self,
        store: QueueStore,
        registry: HandlerRegistry | None = None,
        queues: Sequence[str] | None = None,
        concurrency: int | None = None,
        lease_duration: float | None = None,
        poll_interval: float | None = None,
        max_poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
        reclaim_interval: float | None = None,
        worker_id: str | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the worker pool. Unset arguments fall back to Settings.

        Args:
            store: The queue store to lease from.
            registry: Handler registry; the default registry if omitted.
            queues: Queue names to service.
            concurrency: Number of execution slots.
            lease_duration: Lease length in seconds.
            poll_interval: Initial idle poll interval in seconds.
            max_poll_interval: Ceiling for the idle poll interval.
            heartbeat_interval: Seconds between lease extensions.
            reclaim_interval: Seconds between reaper sweeps; 0 disables the reaper task.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            metrics: Metrics collector; the process-wide one by default.
            clock: Time source; the store's clock by default.
            settings: Settings to read defaults from.
            rng: Random source for retry jitter.
        """
        settings = settings or get_settings()

        self.store = store
        self.registry = registry or get_default_registry()
        self.queues = list(queues or settings.worker_queues)
        self.concurrency = concurrency or settings.worker_concurrency
        self.lease_duration = timedelta(
            seconds=lease_duration or settings.worker_lease_duration_seconds
        )
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.max_poll_interval = max(
            self.poll_interval,
            max_poll_interval or settings.worker_max_poll_interval_seconds,
        )
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds
        self.shutdown_timeout = settings.worker_shutdown_timeout_seconds
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.default_policy = RetryPolicy.from_settings(settings)

        self._metrics = metrics or get_metrics()
        self._clock = clock or store.clock
        self._rng = rng

        if reclaim_interval is None:
            reclaim_interval = settings.reaper_interval_seconds
        self._reaper = (
            Reaper(store, interval_seconds=reclaim_interval, metrics=self._metrics)
            if reclaim_interval > 0
            else None
        )

        self._running = False
        self._stop_event = asyncio.Event()
        self._in_flight: dict[UUID, LeaseInfo] = {}
        self.jobs_processed = 0
        self.jobs_failed = 0

    @property
    def in_flight(self) -> dict[UUID, LeaseInfo]:
        return dict(self._in_flight)

    def slot_owner(self, slot: int) -> str:
        """Lease owner identity for one execution slot."""
        return f"{self.worker_id}/{slot}"

    async def start(self) -> None:
        """Run the pool until stop() is called."""
        logger.info(
            "Worker pool starting",
            extra={
                "worker_id": self.worker_id,
                "queues": self.queues,
                "concurrency": self.concurrency,
            },
        )

        self._running = True
        self._stop_event.clear()
        await self.register()

        slots = [
            asyncio.create_task(self._slot_loop(slot), name=f"slot-{slot}")
            for slot in range(self.concurrency)
        ]
        background = [asyncio.create_task(self._heartbeat_loop(), name="heartbeat")]
        if self._reaper is not None:
            background.append(asyncio.create_task(self._reaper.start(), name="reaper"))

        try:
            await self._stop_event.wait()

            # Slots finish their in-flight job; stragglers are cancelled and their leases expire
            _, pending = await asyncio.wait(slots, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(f"Cancelling {len(pending)} slots still running after shutdown timeout")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await self.unregister()

        logger.info("Worker pool stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the pool gracefully."""
        logger.info("Worker pool stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()
        if self._reaper is not None:
            await self._reaper.stop()
        await self.report_heartbeat(shutting_down=True)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the pool is stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _slot_loop(self, slot: int) -> None:
        self._metrics.worker_started()
        interval = self.poll_interval
        try:
            while self._running:
                try:
                    processed = await self.run_once(slot)
                except asyncio.CancelledError:
                    raise
                except StoreUnavailable as e:
                    logger.error(f"Store unavailable in slot {slot}: {e}")
                    processed = False
                except Exception as e:
                    logger.exception(
                        f"Error in worker slot: {e}",
                        extra={"worker_id": self.worker_id, "slot": slot},
                    )
                    processed = False

                if processed:
                    interval = self.poll_interval
                    continue

                await self._sleep(interval)
                interval = min(interval * 2, self.max_poll_interval)
        finally:
            self._metrics.worker_stopped()

    async def run_once(self, slot: int = 0) -> bool:
        """
        Lease and fully process at most one job.

        Returns:
            True if a job was processed, False if nothing was eligible.
        """
        owner = self.slot_owner(slot)

        with start_span(SPAN_LEASE_JOB, worker_id=owner):
            job = await self.store.lease(self.queues, self.lease_duration, owner)

        if job is None:
            return False

        await self._process(job, owner)
        self.jobs_processed += 1
        return True

    async def _process(self, job: Job, owner: str) -> None:
        self._in_flight[job.id] = LeaseInfo(
            job_id=job.id,
            queue=job.queue,
            lease_owner=owner,
            lease_expires_at=job.lease_expires_at,
            acquired_at=job.leased_at,
        )
        bind_context(worker_id=owner, job_id=str(job.id))
        started = time.monotonic()

        try:
            registration = self.registry.get(job.handler)
            if registration is None:
                error = UnknownHandler(job.handler)
                logger.error(str(error), extra={"job_id": str(job.id)})
                self._metrics.record_job_failed(job.queue, "unknown_handler")
                self.jobs_failed += 1
                await self.store.dead_letter(
                    job.id, owner, str(error), AttemptOutcome.UNKNOWN_HANDLER
                )
                self._metrics.record_job_dead_lettered(job.queue)
                return

            context = JobContext(
                job_id=job.id,
                queue=job.queue,
                handler=job.handler,
                attempt=job.attempts + 1,
                max_attempts=job.max_attempts,
                payload_type=job.payload_type,
                lease_owner=owner,
                lease_expires_at=job.lease_expires_at,
                correlation_id=job.correlation_id,
                tags=list(job.tags or []),
            )

            logger.info(
                "Executing job",
                extra={
                    "job_id": str(job.id),
                    "queue": job.queue,
                    "handler": job.handler,
                    "attempt": context.attempt,
                },
            )

            result, outcome = await self._execute(registration, job, context)
            duration = time.monotonic() - started

            if result.success:
                with start_span(SPAN_ACK_JOB, job_id=job.id):
                    await self.store.ack(job.id, owner, result.output)
                self._metrics.record_job_completed(job.queue, duration)
                logger.info(
                    "Job completed successfully",
                    extra={"job_id": str(job.id), "duration": f"{duration:.2f}s"},
                )
            else:
                await self._handle_failure(job, owner, registration, result, outcome, duration)

        except NotLeased as e:
            # Lease expired and was reclaimed while the handler ran
            logger.warning(
                "Lease lost before outcome was recorded",
                extra={"job_id": str(job.id), "error": str(e)},
            )
        finally:
            self._in_flight.pop(job.id, None)
            unbind_context("worker_id", "job_id")

    async def _execute(
        self,
        registration: HandlerRegistration,
        job: Job,
        context: JobContext,
    ) -> tuple[JobResult, AttemptOutcome]:
        with start_span(
            SPAN_EXECUTE_JOB,
            job_id=job.id,
            queue=job.queue,
            handler=job.handler,
            attempt=context.attempt,
        ) as span:
            try:
                value = await asyncio.wait_for(
                    registration.func(job.payload, context),
                    timeout=job.timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = JobTimeoutError(job.timeout_seconds)
                span.set_attribute("jobqueue.outcome", AttemptOutcome.TIMED_OUT.value)
                return JobResult(success=False, error=str(error)), AttemptOutcome.TIMED_OUT
            except NonRetryableError as e:
                return JobResult(success=False, error=str(e), retryable=False), AttemptOutcome.FAILED
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "Handler raised exception",
                    extra={"job_id": str(job.id), "error": str(e)},
                )
                return (
                    JobResult(success=False, error=f"{type(e).__name__}: {e}"),
                    AttemptOutcome.FAILED,
                )

        result = normalize_result(value)
        outcome = AttemptOutcome.SUCCEEDED if result.success else AttemptOutcome.FAILED
        return result, outcome

    def policy_for(self, job: Job, registration: HandlerRegistration | None) -> RetryPolicy:
        """Resolve the retry policy: job, then handler registration, then settings."""
        if job.retry_policy:
            return RetryPolicy.model_validate(job.retry_policy)
        if registration is not None and registration.retry_policy is not None:
            return registration.retry_policy
        return self.default_policy

    async def _handle_failure(
        self,
        job: Job,
        owner: str,
        registration: HandlerRegistration,
        result: JobResult,
        outcome: AttemptOutcome,
        duration: float,
    ) -> None:
        error = result.error or "Job failed"
        attempts = job.attempts + 1
        reason = "timeout" if outcome == AttemptOutcome.TIMED_OUT else "error"
        self._metrics.record_job_failed(job.queue, reason, duration)
        self.jobs_failed += 1

        logger.warning(
            "Job failed",
            extra={"job_id": str(job.id), "error": error, "attempt": attempts},
        )

        if not result.retryable or attempts >= job.max_attempts:
            await self.store.dead_letter(job.id, owner, error, outcome)
            self._metrics.record_job_dead_lettered(job.queue)
            return

        policy = self.policy_for(job, registration)
        delay = next_delay(policy, attempts + 1, self._rng)
        updated = await self.store.nack(
            job.id,
            owner,
            next_eligible_at=self._clock() + delay,
            error=error,
            outcome=outcome,
        )
        if updated.state == JobState.DELAYED:
            self._metrics.record_job_retried(job.queue)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being reclaimed by the reaper
        while they're still being executed.
        """
        while self._running:
            await self._sleep(self.heartbeat_interval)
            try:
                await self.heartbeat()
                await self.report_heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")

    async def heartbeat(self) -> int:
        """Extend every in-flight lease once. Returns how many were extended."""
        extended = 0
        for job_id, info in list(self._in_flight.items()):
            if await self.store.extend_lease(job_id, info.lease_owner, self.lease_duration):
                info.lease_expires_at = self._clock() + self.lease_duration
                extended += 1
                logger.debug("Extended lease", extra={"job_id": str(job_id)})
            else:
                logger.warning("Could not extend lease", extra={"job_id": str(job_id)})
        return extended

    async def register(self) -> None:
        """Add this pool to the worker registry."""
        try:
            await self.store.register_worker(self.worker_id, self.queues, self.concurrency)
        except StoreUnavailable as e:
            # The next heartbeat registers again
            logger.error(f"Could not register worker: {e}")

    async def unregister(self) -> None:
        try:
            await self.store.unregister_worker(self.worker_id)
        except StoreUnavailable as e:
            logger.error(f"Could not unregister worker: {e}")

    async def report_heartbeat(self, shutting_down: bool = False) -> bool:
        """
        Refresh this pool's registry row, registering again if it was
        removed as stale.

        Returns:
            True if the row was refreshed or recreated.
        """
        try:
            if await self.store.worker_heartbeat(
                self.worker_id,
                active_jobs=len(self._in_flight),
                jobs_processed=self.jobs_processed,
                jobs_failed=self.jobs_failed,
                shutting_down=shutting_down,
            ):
                return True
            if shutting_down:
                return False
            logger.warning("Worker missing from registry, registering again")
            await self.store.register_worker(self.worker_id, self.queues, self.concurrency)
            return True
        except StoreUnavailable as e:
            logger.error(f"Worker heartbeat failed: {e}")
            return False


async def run_async() -> None:
    """Run the worker pool asynchronously."""
    settings = get_settings()
    setup_logging(settings, process="worker")
    setup_tracing(settings)
    await init_db()

    load_handler_modules(settings.worker_handler_modules)
    store = QueueStore.from_settings(get_session_factory(), settings)
    pool = WorkerPool(store, settings=settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(pool.stop())
        )

    try:
        await pool.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker pool."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
