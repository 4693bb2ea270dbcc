"""
API request and response type definitions.
"""

import base64
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobqueue.constants import (
    PAYLOAD_TYPE_BYTES,
    AttemptOutcome,
    JobPriority,
    JobState,
    ThroughputPeriod,
    WorkerStatus,
)
from jobqueue.retry import RetryPolicy


class CreateJobRequest(BaseModel):
    """Request body for enqueuing a new job."""

    handler: str = Field(..., min_length=1, description="Registered handler name")
    queue: str | None = Field(default=None, min_length=1, description="Target queue")
    payload: Any = Field(default=None, description="JSON payload or text")
    payload_type: str | None = Field(default=None, description="Payload type tag override")
    priority: JobPriority = Field(default=JobPriority.NORMAL, description="Job priority")
    max_attempts: int | None = Field(default=None, ge=1, description="Maximum attempts")
    timeout_seconds: float | None = Field(default=None, gt=0, description="Per-attempt timeout")
    delay_seconds: float | None = Field(default=None, ge=0, description="Delay before first attempt")
    scheduled_at: datetime | None = Field(
        default=None, description="Schedule job for future execution (UTC)"
    )
    dedup_key: str | None = Field(default=None, max_length=255)
    correlation_id: str | None = Field(default=None, max_length=255)
    tags: list[str] = Field(default_factory=list)
    retry_policy: RetryPolicy | None = None


class CreateJobResponse(BaseModel):
    """Response body after enqueuing a job."""

    id: UUID
    created: bool
    message: str = "Job created successfully"


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    queue: str
    handler: str
    payload: Any
    payload_type: str
    state: JobState
    priority: JobPriority
    attempts: int
    max_attempts: int
    timeout_seconds: float
    retry_policy: dict[str, Any] | None
    dedup_key: str | None
    correlation_id: str | None
    tags: list[str]
    lease_owner: str | None
    lease_expires_at: datetime | None
    cancel_requested: bool
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    last_error: str | None
    dead_letter_reason: str | None
    result: dict[str, Any] | None

    @classmethod
    def from_job(cls, job: Any) -> "JobResponse":
        """Convert a Job model to a JobResponse. Binary payloads are base64 encoded."""
        if job.payload_type == PAYLOAD_TYPE_BYTES:
            payload = base64.b64encode(job.payload).decode("ascii")
        else:
            payload = job.decoded_payload()
        return cls(
            id=job.id,
            queue=job.queue,
            handler=job.handler,
            payload=payload,
            payload_type=job.payload_type,
            state=job.state,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            timeout_seconds=job.timeout_seconds,
            retry_policy=job.retry_policy,
            dedup_key=job.dedup_key,
            correlation_id=job.correlation_id,
            tags=list(job.tags or []),
            lease_owner=job.lease_owner,
            lease_expires_at=job.lease_expires_at,
            cancel_requested=job.cancel_requested,
            scheduled_at=job.scheduled_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            last_error=job.last_error,
            dead_letter_reason=job.dead_letter_reason,
            result=job.result,
        )


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class AttemptResponse(BaseModel):
    """One recorded execution attempt."""

    model_config = {"from_attributes": True}

    attempt: int
    worker_id: str | None
    outcome: AttemptOutcome
    error: str | None
    started_at: datetime | None
    finished_at: datetime
    duration_ms: float | None


class RetryJobResponse(BaseModel):
    """Response body after retrying a job."""

    id: UUID
    state: JobState
    attempts: int
    message: str = "Job queued for retry"


class DeadLetterResponse(BaseModel):
    """A dead-lettered job with its failure reason and attempt history."""

    job: JobResponse
    reason: str | None
    attempts: list[AttemptResponse]


class QueueSummary(BaseModel):
    """Job counts for one queue."""

    name: str
    pending: int = 0
    delayed: int = 0
    leased: int = 0
    completed: int = 0
    dead_lettered: int = 0
    cancelled: int = 0
    total: int = 0


class QueueListResponse(BaseModel):
    queues: list[QueueSummary]


class QueueStatsResponse(BaseModel):
    """Per-queue breakdown by priority."""

    name: str
    counts: QueueSummary
    by_priority: dict[JobPriority, dict[JobState, int]]
    oldest_pending_at: datetime | None = None


class DashboardResponse(BaseModel):
    """Aggregate counters across all queues."""

    total_jobs: int
    queues: int
    by_state: dict[JobState, int]
    enqueued_last_hour: int
    completed_last_hour: int
    dead_lettered_last_hour: int
    generated_at: datetime


class ThroughputBucket(BaseModel):
    start: datetime
    end: datetime
    completed: int = 0
    failed: int = 0


class ThroughputResponse(BaseModel):
    """Finished jobs of one queue over a period, bucketed by completion time."""

    queue: str
    period: ThroughputPeriod
    total_processed: int
    completed: int
    failed: int
    avg_per_second: float
    success_rate: float = Field(..., description="Completed share of processed jobs, in percent")
    buckets: list[ThroughputBucket]


class ActivityEntry(BaseModel):
    """One finished execution attempt."""

    job_id: UUID
    queue: str
    handler: str
    attempt: int
    outcome: AttemptOutcome
    worker_id: str | None
    timestamp: datetime
    duration_ms: float | None
    error: str | None


class ActivityResponse(BaseModel):
    activity: list[ActivityEntry]


class WorkerHealth(BaseModel):
    """A registered worker pool and its liveness."""

    worker_id: str
    status: WorkerStatus
    queues: list[str]
    concurrency: int
    started_at: datetime
    last_heartbeat_at: datetime
    heartbeat_age_seconds: float
    active_jobs: int
    jobs_processed: int
    jobs_failed: int


class WorkerListResponse(BaseModel):
    workers: list[WorkerHealth]
    active: int


class ScheduleInfo(BaseModel):
    """A scheduled job definition and its next firing."""

    name: str
    cron: str
    enabled: bool
    leader_only: bool
    next_fire_at: datetime | None
    last_fire_at: datetime | None = None


class ScheduledListResponse(BaseModel):
    identity: str
    is_leader: bool
    leader: str | None = Field(default=None, description="Current fleet leader, if any")
    definitions: list[ScheduleInfo]


class TriggerResponse(BaseModel):
    """Result of a manual scheduled firing."""

    name: str
    job_id: UUID
    created: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
