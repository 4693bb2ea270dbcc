"""
Producer: turns job specs into stored jobs.

Validation happens here so a malformed job spec never reaches the store.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import pydantic
from pydantic import BaseModel, Field

from jobqueue.clock import Clock, to_naive_utc
from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    DEFAULT_PRIORITY,
    PAYLOAD_TYPE_BYTES,
    PAYLOAD_TYPE_JSON,
    PAYLOAD_TYPE_TEXT,
    SPAN_ENQUEUE_JOB,
    JobPriority,
)
from jobqueue.db.models import Job
from jobqueue.db.store import QueueStore
from jobqueue.errors import DuplicateJob, ValidationError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import start_span
from jobqueue.retry import RetryPolicy
from jobqueue.worker.handlers import HandlerRegistry

if TYPE_CHECKING:
    from jobqueue.scheduler.leader import LeaderFence

logger = logging.getLogger(__name__)


class JobSpec(BaseModel):
    """What a caller asks to run. Unset fields resolve from handler and settings defaults."""

    handler: str = Field(..., min_length=1, max_length=255)
    queue: str | None = Field(default=None, min_length=1, max_length=255)
    payload: Any = None
    payload_type: str | None = None
    priority: JobPriority = DEFAULT_PRIORITY
    max_attempts: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = None
    delay_seconds: float | None = Field(default=None, ge=0)
    dedup_key: str | None = Field(default=None, min_length=1, max_length=255)
    correlation_id: str | None = Field(default=None, max_length=255)
    tags: list[str] = Field(default_factory=list)
    retry_policy: RetryPolicy | None = None


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of an enqueue. created is False when a live duplicate already existed."""

    job_id: UUID
    created: bool


def encode_payload(payload: Any, payload_type: str | None = None) -> tuple[bytes, str]:
    """
    Serialize a payload to bytes and pick its type tag.

    bytes pass through (application/octet-stream), str is UTF-8 encoded
    (text/plain), anything else must be JSON serialisable.

    Raises:
        ValidationError: If the payload cannot be serialized.
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload), payload_type or PAYLOAD_TYPE_BYTES
    if isinstance(payload, str):
        return payload.encode("utf-8"), payload_type or PAYLOAD_TYPE_TEXT

    if payload_type not in (None, PAYLOAD_TYPE_JSON):
        raise ValidationError(f"Structured payloads must use {PAYLOAD_TYPE_JSON}, got {payload_type}")
    try:
        encoded = json.dumps(payload, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Payload is not JSON serialisable: {e}") from e
    return encoded.encode("utf-8"), PAYLOAD_TYPE_JSON


class Producer:
    """Builds Job rows from specs and enqueues them through the queue store."""

    def __init__(
        self,
        store: QueueStore,
        registry: HandlerRegistry | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock | None = None,
    ):
        """
        Args:
            store: The queue store jobs are written to.
            registry: When given, handler names are checked against it and
                registration defaults apply.
            settings: Source of fleet-wide job defaults.
            metrics: Metrics collector; the process-wide one by default.
            clock: Time source; the store's clock by default.
        """
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._clock = clock or store.clock

    @staticmethod
    def coerce_spec(spec: JobSpec | dict[str, Any]) -> JobSpec:
        """Validate a dict into a JobSpec, mapping pydantic errors onto ValidationError."""
        if isinstance(spec, JobSpec):
            return spec
        try:
            return JobSpec.model_validate(spec)
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e

    def build_job(self, spec: JobSpec | dict[str, Any], scheduled_at: datetime | None = None) -> Job:
        """
        Resolve defaults and build a transient Job for the spec.

        Raises:
            ValidationError: Unknown handler, bad payload or non-positive timeout.
        """
        spec = self.coerce_spec(spec)

        registration = None
        if self.registry is not None:
            registration = self.registry.get(spec.handler)
            if registration is None:
                raise ValidationError(f"Unknown handler: {spec.handler}")

        max_attempts = spec.max_attempts
        if max_attempts is None and spec.retry_policy is not None:
            max_attempts = spec.retry_policy.max_attempts
        if max_attempts is None and registration is not None and registration.retry_policy is not None:
            max_attempts = registration.retry_policy.max_attempts
        if max_attempts is None:
            max_attempts = self.settings.default_max_attempts

        timeout = spec.timeout_seconds
        if timeout is None and registration is not None:
            timeout = registration.timeout_seconds
        if timeout is None:
            timeout = self.settings.default_job_timeout_seconds
        if timeout <= 0:
            raise ValidationError(f"timeout_seconds must be positive, got {timeout}")

        payload, payload_type = encode_payload(spec.payload, spec.payload_type)

        now = self._clock()
        if scheduled_at is not None:
            scheduled_at = to_naive_utc(scheduled_at)
        elif spec.delay_seconds:
            scheduled_at = now + timedelta(seconds=spec.delay_seconds)
        else:
            scheduled_at = now

        return Job(
            id=uuid4(),
            queue=spec.queue or self.settings.default_queue,
            handler=spec.handler,
            payload=payload,
            payload_type=payload_type,
            priority=spec.priority,
            max_attempts=max_attempts,
            timeout_seconds=timeout,
            retry_policy=spec.retry_policy.model_dump(mode="json") if spec.retry_policy else None,
            dedup_key=spec.dedup_key,
            correlation_id=spec.correlation_id,
            tags=list(spec.tags),
            cancel_requested=False,
            scheduled_at=scheduled_at,
            created_at=now,
        )

    async def enqueue(
        self,
        spec: JobSpec | dict[str, Any],
        fence: "LeaderFence | None" = None,
        scheduled_at: datetime | None = None,
    ) -> EnqueueResult:
        """
        Enqueue a job.

        Args:
            spec: The job spec (or an equivalent dict).
            fence: Optional leadership fence checked inside the insert transaction.
            scheduled_at: Earliest eligible time; now (plus delay_seconds) by default.

        Returns:
            EnqueueResult with the new job id, or the live duplicate's id and created=False.

        Raises:
            ValidationError: The job spec was rejected before reaching the store.
            LeadershipLost: The fence no longer holds.
        """
        job = self.build_job(spec, scheduled_at)

        with start_span(SPAN_ENQUEUE_JOB, queue=job.queue, handler=job.handler, job_id=job.id):
            try:
                stored = await self.store.enqueue(job, fence=fence)
            except DuplicateJob as e:
                logger.info(
                    "Enqueue deduplicated",
                    extra={"job_id": str(e.existing_id), "dedup_key": e.dedup_key, "queue": job.queue},
                )
                return EnqueueResult(job_id=e.existing_id, created=False)

        self._metrics.record_job_enqueued(stored.queue, stored.priority.value)
        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(stored.id),
                "queue": stored.queue,
                "handler": stored.handler,
                "priority": stored.priority.value,
                "scheduled_at": stored.scheduled_at.isoformat(),
            },
        )
        return EnqueueResult(job_id=stored.id, created=True)

    async def enqueue_at(
        self,
        spec: JobSpec | dict[str, Any],
        when: datetime,
        fence: "LeaderFence | None" = None,
    ) -> EnqueueResult:
        """Enqueue a job that becomes eligible at when."""
        return await self.enqueue(spec, fence=fence, scheduled_at=when)

    async def enqueue_in(
        self,
        spec: JobSpec | dict[str, Any],
        delay: timedelta | float,
        fence: "LeaderFence | None" = None,
    ) -> EnqueueResult:
        """Enqueue a job that becomes eligible after delay (seconds or timedelta)."""
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        if delay < timedelta(0):
            raise ValidationError("delay must not be negative")
        return await self.enqueue(spec, fence=fence, scheduled_at=self._clock() + delay)
