"""
Unit tests for the producer.
"""

from datetime import datetime, timedelta, timezone

import pytest

from jobqueue.config import Settings
from jobqueue.constants import (
    PAYLOAD_TYPE_BYTES,
    PAYLOAD_TYPE_JSON,
    PAYLOAD_TYPE_TEXT,
    JobPriority,
    JobState,
)
from jobqueue.db.store import QueueStore
from jobqueue.errors import ValidationError
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.producer import JobSpec, Producer, encode_payload
from jobqueue.retry import RetryPolicy
from jobqueue.worker.handlers import HandlerRegistry, handle_echo


class TestEncodePayload:
    """Tests for encode_payload()."""

    def test_json_payload(self):
        payload, payload_type = encode_payload({"a": 1})

        assert payload == b'{"a":1}'
        assert payload_type == PAYLOAD_TYPE_JSON

    def test_text_payload(self):
        assert encode_payload("héllo") == ("héllo".encode(), PAYLOAD_TYPE_TEXT)

    def test_bytes_payload(self):
        assert encode_payload(b"\x00\x01") == (b"\x00\x01", PAYLOAD_TYPE_BYTES)

    def test_explicit_type_kept_for_bytes(self):
        assert encode_payload(b"<xml/>", "application/xml") == (b"<xml/>", "application/xml")

    def test_unserialisable_payload(self):
        """Payloads that are not JSON serialisable are rejected."""
        with pytest.raises(ValidationError):
            encode_payload({"when": object()})

    def test_nan_rejected(self):
        with pytest.raises(ValidationError):
            encode_payload({"value": float("nan")})


class TestProducer:
    """Tests for Producer.enqueue and its variants."""

    async def test_enqueue_creates_pending_job(self, producer: Producer, store: QueueStore):
        """Test successful enqueue with defaults from settings."""
        result = await producer.enqueue({"handler": "echo", "payload": {"message": "hi"}})

        assert result.created is True

        job = await store.get_job(result.job_id)
        assert job.state == JobState.PENDING
        assert job.queue == "default"
        assert job.priority == JobPriority.NORMAL
        assert job.max_attempts == 3
        assert job.timeout_seconds == 5
        assert job.decoded_payload() == {"message": "hi"}

    async def test_enqueue_accepts_job_spec(self, producer: Producer, store: QueueStore):
        spec = JobSpec(handler="echo", queue="emails", priority=JobPriority.HIGH, tags=["a"])

        result = await producer.enqueue(spec)

        job = await store.get_job(result.job_id)
        assert job.queue == "emails"
        assert job.priority == JobPriority.HIGH
        assert job.tags == ["a"]

    async def test_unknown_handler_rejected(self, producer: Producer):
        with pytest.raises(ValidationError, match="Unknown handler"):
            await producer.enqueue({"handler": "does_not_exist"})

    async def test_invalid_spec_rejected(self, producer: Producer):
        """Malformed specs never reach the store."""
        with pytest.raises(ValidationError):
            await producer.enqueue({"handler": "echo", "max_attempts": 0})

        with pytest.raises(ValidationError):
            await producer.enqueue({"handler": "echo", "priority": "urgent"})

        with pytest.raises(ValidationError):
            await producer.enqueue({"handler": "echo", "timeout_seconds": 0})

    async def test_dedup_returns_existing_job(self, producer: Producer):
        """A second enqueue with the same dedup key returns the live job's id."""
        first = await producer.enqueue({"handler": "echo", "dedup_key": "invoice-7"})
        second = await producer.enqueue({"handler": "echo", "dedup_key": "invoice-7"})

        assert first.created is True
        assert second.created is False
        assert second.job_id == first.job_id

    async def test_registration_defaults_apply(
        self,
        store: QueueStore,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        registry = HandlerRegistry()
        registry.register(
            "echo",
            handle_echo,
            retry_policy=RetryPolicy.fixed(max_attempts=6, delay_seconds=1),
            timeout_seconds=42,
        )
        producer = Producer(store, registry=registry, settings=test_settings, metrics=metrics)

        result = await producer.enqueue({"handler": "echo"})

        job = await store.get_job(result.job_id)
        assert job.max_attempts == 6
        assert job.timeout_seconds == 42
        # The registration policy is resolved at execution time, not copied onto the job
        assert job.retry_policy is None

    async def test_spec_overrides_registration(self, producer: Producer, store: QueueStore):
        policy = RetryPolicy.linear(max_attempts=4, increment_seconds=2)

        result = await producer.enqueue(
            {"handler": "echo", "retry_policy": policy, "timeout_seconds": 9}
        )

        job = await store.get_job(result.job_id)
        assert job.max_attempts == 4
        assert job.timeout_seconds == 9
        assert RetryPolicy.model_validate(job.retry_policy) == policy

    async def test_delay_seconds(self, producer: Producer, store: QueueStore, clock):
        result = await producer.enqueue({"handler": "echo", "delay_seconds": 30})

        job = await store.get_job(result.job_id)
        assert job.state == JobState.DELAYED
        assert job.scheduled_at == clock() + timedelta(seconds=30)

    async def test_enqueue_in(self, producer: Producer, store: QueueStore, clock):
        result = await producer.enqueue_in({"handler": "echo"}, timedelta(minutes=2))

        job = await store.get_job(result.job_id)
        assert job.state == JobState.DELAYED
        assert job.scheduled_at == clock() + timedelta(minutes=2)

    async def test_enqueue_in_negative_delay(self, producer: Producer):
        with pytest.raises(ValidationError):
            await producer.enqueue_in({"handler": "echo"}, -1)

    async def test_enqueue_at_normalizes_timezone(self, producer: Producer, store: QueueStore, clock):
        """Aware datetimes are stored as naive UTC."""
        when = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=1)))

        result = await producer.enqueue_at({"handler": "echo"}, when)

        job = await store.get_job(result.job_id)
        assert job.scheduled_at == datetime(2024, 1, 1, 13, 0)
        assert job.state == JobState.DELAYED

    async def test_enqueue_at_past_is_pending(self, producer: Producer, store: QueueStore, clock):
        result = await producer.enqueue_at({"handler": "echo"}, clock() - timedelta(hours=1))

        job = await store.get_job(result.job_id)
        assert job.state == JobState.PENDING

    async def test_enqueue_records_metric(self, producer: Producer, metrics: MetricsCollector):
        await producer.enqueue({"handler": "echo", "priority": "high"})

        value = metrics.registry.get_sample_value(
            "jobs_enqueued_total",
            {"queue": "default", "priority": "high"},
        )
        assert value == 1.0

    async def test_configured_default_queue(
        self,
        store: QueueStore,
        registry: HandlerRegistry,
        metrics: MetricsCollector,
    ):
        settings = Settings(default_queue="background")
        producer = Producer(store, registry=registry, settings=settings, metrics=metrics)

        result = await producer.enqueue({"handler": "echo"})

        assert (await store.get_job(result.job_id)).queue == "background"
