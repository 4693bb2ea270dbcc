"""
Error taxonomy for the job queue.

Store and producer operations raise these; API routes translate them into
HTTP responses and the worker pool maps handler failures onto retry/DLQ.
"""

from uuid import UUID


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class ValidationError(JobQueueError):
    """Bad job spec, rejected before it reaches the store. Never retried."""


class DuplicateJob(JobQueueError):
    """A live job already holds the deduplication key."""

    def __init__(self, existing_id: UUID, dedup_key: str | None = None):
        super().__init__(f"Duplicate of active job {existing_id} (dedup_key={dedup_key})")
        self.existing_id = existing_id
        self.dedup_key = dedup_key


class NotFound(JobQueueError):
    """No job (or scheduled definition) with the given identifier."""

    def __init__(self, job_id: UUID | str, kind: str = "Job"):
        super().__init__(f"{kind} not found: {job_id}")
        self.job_id = job_id
        self.kind = kind


class InvalidJobState(JobQueueError):
    """The job is not in a state that allows the requested transition."""

    def __init__(self, job_id: UUID | str, state: str, expected: str):
        super().__init__(f"Job {job_id} is {state}, expected {expected}")
        self.job_id = job_id
        self.state = state
        self.expected = expected


class NotLeased(InvalidJobState):
    """The job is not currently leased by the caller."""

    def __init__(self, job_id: UUID | str, state: str, owner: str | None = None):
        super().__init__(job_id, state, "leased" if owner is None else f"leased by {owner}")
        self.owner = owner


class AlreadyLeased(InvalidJobState):
    """Cancellation of an in-flight job; it was only marked for cancellation."""

    def __init__(self, job_id: UUID | str):
        super().__init__(job_id, "leased", "pending or delayed")


class HandlerError(JobQueueError):
    """Handler-reported failure. Retried per the job's retry policy."""

    retryable = True


class JobTimeoutError(HandlerError):
    """Handler exceeded its per-attempt deadline."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Job timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class NonRetryableError(HandlerError):
    """Handler failure that must go straight to the dead-letter set."""

    retryable = False


class UnknownHandler(JobQueueError):
    """No handler registered under the job's handler name."""

    def __init__(self, handler: str):
        super().__init__(f"No handler registered for: {handler}")
        self.handler = handler


class LeadershipLost(JobQueueError):
    """The scheduler leadership lease is no longer held by this instance."""


class StoreUnavailable(JobQueueError):
    """The shared store stayed unreachable after local retries."""
