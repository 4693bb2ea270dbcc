"""
Integration tests for worker functionality.
"""

import asyncio
import random
from typing import Any

import pytest

from jobqueue.config import Settings
from jobqueue.constants import AttemptOutcome, JobPriority, JobState
from jobqueue.db.models import Job
from jobqueue.db.store import QueueStore
from jobqueue.errors import AlreadyLeased, NonRetryableError
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.producer import Producer
from jobqueue.reaper.main import Reaper
from jobqueue.retry import RetryPolicy
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.handlers import HandlerRegistry
from jobqueue.worker.main import WorkerPool


@pytest.fixture
def pool(
    store: QueueStore,
    registry: HandlerRegistry,
    metrics: MetricsCollector,
    test_settings: Settings,
) -> WorkerPool:
    """Worker pool driven step by step through run_once()."""
    return WorkerPool(
        store,
        registry=registry,
        queues=["default"],
        worker_id="test-worker",
        reclaim_interval=0,
        metrics=metrics,
        settings=test_settings,
        rng=random.Random(42),
    )


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    async def test_idle_run_returns_false(self, pool: WorkerPool):
        assert await pool.run_once() is False

    async def test_full_job_lifecycle_success(
        self,
        pool: WorkerPool,
        producer: Producer,
        store: QueueStore,
        metrics: MetricsCollector,
    ):
        """Test complete job lifecycle: enqueue -> lease -> run -> ack."""
        result = await producer.enqueue({"handler": "echo", "payload": {"message": "test"}})

        assert await pool.run_once() is True

        job = await store.get_job(result.job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1
        assert job.result == {"echo": {"message": "test"}}
        assert pool.in_flight == {}

        attempts = await store.get_attempts(job.id)
        assert [a.outcome for a in attempts] == [AttemptOutcome.SUCCEEDED]
        assert attempts[0].worker_id == "test-worker/0"
        assert metrics.registry.get_sample_value("jobs_completed_total", {"queue": "default"}) == 1.0

    async def test_high_priority_runs_first(
        self,
        pool: WorkerPool,
        producer: Producer,
        store: QueueStore,
    ):
        """A HIGH job enqueued after a NORMAL one is processed first."""
        normal = await producer.enqueue({"handler": "echo", "priority": JobPriority.NORMAL})
        high = await producer.enqueue({"handler": "echo", "priority": JobPriority.HIGH})

        await pool.run_once()

        assert (await store.get_job(high.job_id)).state == JobState.COMPLETED
        assert (await store.get_job(normal.job_id)).state == JobState.PENDING

        await pool.run_once()

        assert (await store.get_job(normal.job_id)).state == JobState.COMPLETED

    async def test_single_attempt_failure_dead_letters(
        self,
        pool: WorkerPool,
        producer: Producer,
        store: QueueStore,
        metrics: MetricsCollector,
    ):
        result = await producer.enqueue({"handler": "failing_job", "max_attempts": 1})

        await pool.run_once()

        job = await store.get_job(result.job_id)
        assert job.state == JobState.DEAD_LETTERED
        assert job.attempts == 1
        assert "Intentional failure on attempt 1" in job.dead_letter_reason
        assert metrics.registry.get_sample_value("jobs_dead_lettered_total", {"queue": "default"}) == 1.0

    async def test_exponential_backoff_until_dead_letter(
        self,
        pool: WorkerPool,
        producer: Producer,
        store: QueueStore,
        clock,
    ):
        """Retries wait ~2x then ~4x the base delay before the job is dead-lettered."""
        policy = RetryPolicy.exponential(max_attempts=3, base_delay_seconds=5, jitter=0.1)
        result = await producer.enqueue({"handler": "failing_job", "retry_policy": policy})

        await pool.run_once()
        job = await store.get_job(result.job_id)
        assert job.state == JobState.DELAYED
        assert job.attempts == 1
        assert 9.0 <= (job.scheduled_at - clock()).total_seconds() <= 11.0

        # Not eligible before its backoff expires
        assert await pool.run_once() is False

        clock.now = job.scheduled_at
        await pool.run_once()
        job = await store.get_job(result.job_id)
        assert job.state == JobState.DELAYED
        assert job.attempts == 2
        assert 18.0 <= (job.scheduled_at - clock()).total_seconds() <= 22.0

        clock.now = job.scheduled_at
        await pool.run_once()
        job = await store.get_job(result.job_id)
        assert job.state == JobState.DEAD_LETTERED
        assert job.attempts == 3

        attempts = await store.get_attempts(job.id)
        assert [a.attempt for a in attempts] == [1, 2, 3]
        assert all(a.outcome == AttemptOutcome.FAILED for a in attempts)

    async def test_unknown_handler_dead_letters(
        self,
        pool: WorkerPool,
        store: QueueStore,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        """Jobs for handlers this worker does not know go straight to the DLQ."""
        unchecked = Producer(store, settings=test_settings, metrics=metrics)
        result = await unchecked.enqueue({"handler": "not_registered"})

        await pool.run_once()

        job = await store.get_job(result.job_id)
        assert job.state == JobState.DEAD_LETTERED
        assert job.attempts == 1
        attempts = await store.get_attempts(job.id)
        assert attempts[0].outcome == AttemptOutcome.UNKNOWN_HANDLER

    async def test_timeout_counts_as_failure(
        self,
        pool: WorkerPool,
        producer: Producer,
        store: QueueStore,
    ):
        result = await producer.enqueue(
            {
                "handler": "sleep",
                "payload": {"duration_seconds": 5},
                "timeout_seconds": 0.05,
                "max_attempts": 1,
            }
        )

        await pool.run_once()

        job = await store.get_job(result.job_id)
        assert job.state == JobState.DEAD_LETTERED
        assert "timed out" in job.last_error
        attempts = await store.get_attempts(job.id)
        assert attempts[0].outcome == AttemptOutcome.TIMED_OUT

    async def test_exception_is_retried(
        self,
        pool: WorkerPool,
        producer: Producer,
        registry: HandlerRegistry,
        store: QueueStore,
    ):
        @registry.register("explodes")
        async def explodes(payload: bytes, context: JobContext) -> None:
            raise RuntimeError("kaboom")

        result = await producer.enqueue({"handler": "explodes"})

        await pool.run_once()

        job = await store.get_job(result.job_id)
        assert job.state == JobState.DELAYED
        assert job.last_error == "RuntimeError: kaboom"

    async def test_non_retryable_error_skips_retries(
        self,
        pool: WorkerPool,
        producer: Producer,
        registry: HandlerRegistry,
        store: QueueStore,
    ):
        """NonRetryableError dead-letters on the first attempt."""

        @registry.register("rejects")
        async def rejects(payload: bytes, context: JobContext) -> None:
            raise NonRetryableError("malformed invoice")

        result = await producer.enqueue({"handler": "rejects", "max_attempts": 5})

        await pool.run_once()

        job = await store.get_job(result.job_id)
        assert job.state == JobState.DEAD_LETTERED
        assert job.attempts == 1
        assert job.dead_letter_reason == "malformed invoice"

    async def test_dict_result_stored(
        self,
        pool: WorkerPool,
        producer: Producer,
        registry: HandlerRegistry,
        store: QueueStore,
    ):
        @registry.register("count")
        async def count(payload: bytes, context: JobContext) -> dict[str, Any]:
            return {"items": len(context.decode(payload))}

        result = await producer.enqueue({"handler": "count", "payload": [1, 2, 3]})

        await pool.run_once()

        assert (await store.get_job(result.job_id)).result == {"items": 3}

    async def test_cancel_requested_while_running(
        self,
        pool: WorkerPool,
        producer: Producer,
        registry: HandlerRegistry,
        store: QueueStore,
    ):
        """A job cancelled mid-flight is not rescheduled after it fails."""

        @registry.register("cancelled_midway")
        async def cancelled_midway(payload: bytes, context: JobContext) -> JobResult:
            with pytest.raises(AlreadyLeased):
                await store.cancel(context.job_id)
            return JobResult(success=False, error="gave up")

        result = await producer.enqueue({"handler": "cancelled_midway"})

        await pool.run_once()

        job = await store.get_job(result.job_id)
        assert job.state == JobState.CANCELLED
        assert job.attempts == 1

    async def test_heartbeat_extends_lease(
        self,
        pool: WorkerPool,
        producer: Producer,
        registry: HandlerRegistry,
        store: QueueStore,
        clock,
    ):
        seen: dict[str, Any] = {}

        @registry.register("long_running")
        async def long_running(payload: bytes, context: JobContext) -> None:
            clock.advance(20)
            seen["extended"] = await pool.heartbeat()
            seen["job"] = await store.get_job(context.job_id)

        await producer.enqueue({"handler": "long_running"})

        await pool.run_once()

        assert seen["extended"] == 1
        assert seen["job"].lease_expires_at == clock() + pool.lease_duration

    async def test_crashed_worker_job_is_reclaimed(
        self,
        pool: WorkerPool,
        producer: Producer,
        store: QueueStore,
        metrics: MetricsCollector,
        clock,
    ):
        """A job whose worker vanished is reclaimed and completed by another worker."""
        result = await producer.enqueue({"handler": "echo"})
        await store.lease(["default"], pool.lease_duration, "crashed-worker/0")

        clock.advance(pool.lease_duration.total_seconds() + 1)
        reaper = Reaper(store, interval_seconds=1, metrics=metrics)
        assert await reaper.run_once() == 1

        assert metrics.registry.get_sample_value("leases_reclaimed_total") == 1.0
        assert metrics.registry.get_sample_value("jobs_pending", {"queue": "default"}) == 1.0

        await pool.run_once()

        job = await store.get_job(result.job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts == 2
        outcomes = [a.outcome for a in await store.get_attempts(job.id)]
        assert outcomes == [AttemptOutcome.LEASE_EXPIRED, AttemptOutcome.SUCCEEDED]

    async def test_policy_resolution_order(self, pool: WorkerPool, registry: HandlerRegistry, store: QueueStore):
        """Job policy beats registration policy, which beats the settings default."""
        job_policy = RetryPolicy.fixed(max_attempts=2, delay_seconds=1)
        handler_policy = RetryPolicy.fixed(max_attempts=2, delay_seconds=9)
        registry.register("with_policy", lambda p, c: None, retry_policy=handler_policy)
        registration = registry.get("with_policy")

        with_job_policy = Job(handler="with_policy", retry_policy=job_policy.model_dump(mode="json"))
        without = Job(handler="with_policy", retry_policy=None)

        assert pool.policy_for(with_job_policy, registration) == job_policy
        assert pool.policy_for(without, registration) == handler_policy
        assert pool.policy_for(without, None) == pool.default_policy


class TestWorkerPoolLoop:
    """Tests for the long-running pool loop."""

    async def test_start_processes_jobs_and_stops(
        self,
        store: QueueStore,
        registry: HandlerRegistry,
        producer: Producer,
        metrics: MetricsCollector,
        test_settings: Settings,
    ):
        pool = WorkerPool(
            store,
            registry=registry,
            queues=["default"],
            concurrency=1,
            heartbeat_interval=10,
            reclaim_interval=0,
            worker_id="loop-worker",
            metrics=metrics,
            settings=test_settings,
        )
        ids = [(await producer.enqueue({"handler": "echo", "payload": i})).job_id for i in range(3)]

        task = asyncio.create_task(pool.start())
        try:
            for _ in range(200):
                if await store.list_workers():
                    break
                await asyncio.sleep(0.01)
            [registered] = await store.list_workers()
            assert registered.worker_id == "loop-worker"

            for _ in range(200):
                jobs, total = await store.list_jobs(state=JobState.COMPLETED)
                if total == len(ids):
                    break
                await asyncio.sleep(0.01)
        finally:
            await pool.stop()
            await asyncio.wait_for(task, timeout=5)

        assert total == len(ids)
        assert metrics.registry.get_sample_value("active_workers") == 0.0
        assert await store.list_workers() == []
        assert pool.jobs_processed == len(ids)


class TestWorkerRegistration:
    """Tests for the pool's row in the worker registry."""

    async def test_heartbeat_reports_counters(
        self,
        pool: WorkerPool,
        producer: Producer,
        store: QueueStore,
    ):
        await pool.register()
        await producer.enqueue({"handler": "echo"})
        await producer.enqueue({"handler": "failing_job", "max_attempts": 1})
        await pool.run_once()
        await pool.run_once()

        assert await pool.report_heartbeat() is True

        [worker] = await store.list_workers()
        assert worker.worker_id == "test-worker"
        assert worker.jobs_processed == 2
        assert worker.jobs_failed == 1
        assert worker.active_jobs == 0

    async def test_heartbeat_registers_again_after_cleanup(
        self,
        pool: WorkerPool,
        store: QueueStore,
        metrics: MetricsCollector,
        clock,
    ):
        """A pool removed as stale puts itself back on its next heartbeat."""
        await pool.register()
        clock.advance(120)
        reaper = Reaper(store, interval_seconds=1, metrics=metrics, refresh_gauges=False)
        await reaper.run_once()
        assert await store.list_workers() == []

        assert await pool.report_heartbeat() is True

        [worker] = await store.list_workers()
        assert worker.worker_id == "test-worker"
        assert worker.queues == ["default"]

    async def test_shutting_down_heartbeat_does_not_register(self, pool: WorkerPool, store: QueueStore):
        assert await pool.report_heartbeat(shutting_down=True) is False
        assert await store.list_workers() == []
