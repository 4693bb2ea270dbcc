"""
Job-related type definitions for internal use.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobqueue.constants import PAYLOAD_TYPE_JSON, PAYLOAD_TYPE_TEXT


def decode_payload(payload: bytes, payload_type: str) -> Any:
    """Decode raw payload bytes according to their type tag; unknown tags stay bytes."""
    if payload_type == PAYLOAD_TYPE_JSON:
        return json.loads(payload) if payload else None
    if payload_type == PAYLOAD_TYPE_TEXT:
        return payload.decode("utf-8")
    return payload


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata; the payload itself is passed alongside as bytes.
    """

    job_id: UUID
    queue: str
    handler: str
    attempt: int
    max_attempts: int
    payload_type: str
    lease_owner: str
    lease_expires_at: datetime
    correlation_id: str | None = None
    tags: list[str] = field(default_factory=list)

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    def decode(self, payload: bytes) -> Any:
        """Decode the payload bytes handed to the handler."""
        return decode_payload(payload, self.payload_type)


@dataclass
class LeaseInfo:
    """
    Information about a job lease.
    Used by workers to track their in-flight jobs for heartbeats.
    """

    job_id: UUID
    queue: str
    lease_owner: str
    lease_expires_at: datetime
    acquired_at: datetime
