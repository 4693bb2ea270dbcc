"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> LEASED (lease acquired)
    - DELAYED -> PENDING (scheduled_at reached)
    - LEASED -> COMPLETED (ack)
    - LEASED -> DELAYED (nack, retry scheduled)
    - LEASED -> DEAD_LETTERED (retries exhausted or non-retryable)
    - LEASED -> PENDING (lease expired - crash recovery)
    - PENDING/DELAYED -> CANCELLED (cancel)
    - DEAD_LETTERED -> PENDING (manual retry)
    """

    PENDING = "pending"
    DELAYED = "delayed"
    LEASED = "leased"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


ACTIVE_STATES: tuple[JobState, ...] = (
    JobState.PENDING,
    JobState.DELAYED,
    JobState.LEASED,
)


class JobPriority(StrEnum):
    """Job priority levels for queue ordering."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# Priority weights for ordering (higher = processed first)
PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.LOW: 1,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 10,
    JobPriority.CRITICAL: 100,
}


class RetryKind(StrEnum):
    """Backoff strategies for failed jobs."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class AttemptOutcome(StrEnum):
    """How a single execution attempt ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    LEASE_EXPIRED = "lease_expired"
    UNKNOWN_HANDLER = "unknown_handler"
    CANCELLED = "cancelled"


class WorkerStatus(StrEnum):
    """Liveness of a registered worker pool."""

    ACTIVE = "active"
    STALE = "stale"
    SHUTTING_DOWN = "shutting_down"


class ThroughputPeriod(StrEnum):
    """Throughput windows and their bucket sizes."""

    LAST_HOUR = "last_hour"  # 12 x 5 minutes
    LAST_24_HOURS = "last_24_hours"  # 24 x 1 hour
    LAST_7_DAYS = "last_7_days"  # 7 x 1 day


# Payload type tags
PAYLOAD_TYPE_JSON = "application/json"
PAYLOAD_TYPE_TEXT = "text/plain"
PAYLOAD_TYPE_BYTES = "application/octet-stream"

# Default values
DEFAULT_QUEUE = "default"
DEFAULT_PRIORITY = JobPriority.NORMAL
DEFAULT_LEASE_NAME = "scheduler"

# Metrics names
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOBS_FAILED = "jobs_failed_total"
METRIC_JOBS_RETRIED = "jobs_retried_total"
METRIC_JOBS_DEAD_LETTERED = "jobs_dead_lettered_total"
METRIC_JOBS_PENDING = "jobs_pending"
METRIC_JOBS_ACTIVE = "jobs_active"
METRIC_JOB_DURATION = "job_execution_duration_seconds"
METRIC_LEASES_RECLAIMED = "leases_reclaimed_total"
METRIC_ACTIVE_WORKERS = "active_workers"
METRIC_SCHEDULER_LEADER = "scheduler_is_leader"
METRIC_SCHEDULED_FIRED = "scheduled_jobs_fired_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_LEASE_JOB = "lease_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_ACK_JOB = "ack_job"
SPAN_SCHEDULER_TICK = "scheduler_tick"
