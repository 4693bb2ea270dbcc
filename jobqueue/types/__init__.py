"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobqueue.types.api import (
    AttemptResponse,
    CreateJobRequest,
    CreateJobResponse,
    DashboardResponse,
    DeadLetterResponse,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    QueueListResponse,
    QueueStatsResponse,
    QueueSummary,
    RetryJobResponse,
    ScheduledListResponse,
    ScheduleInfo,
    TriggerResponse,
)
from jobqueue.types.job import (
    JobContext,
    JobResult,
    LeaseInfo,
    decode_payload,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "CreateJobResponse",
    "JobResponse",
    "JobListResponse",
    "AttemptResponse",
    "RetryJobResponse",
    "DeadLetterResponse",
    "QueueSummary",
    "QueueListResponse",
    "QueueStatsResponse",
    "DashboardResponse",
    "ScheduleInfo",
    "ScheduledListResponse",
    "TriggerResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobResult",
    "JobContext",
    "LeaseInfo",
    "decode_payload",
]
