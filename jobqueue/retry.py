"""
Retry policies for failed jobs.

next_delay() is the only place backoff is computed; the worker pool calls it
with the number of the attempt being scheduled.
"""

import random
from datetime import timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from jobqueue.constants import RetryKind

if TYPE_CHECKING:
    from jobqueue.config import Settings


class RetryPolicy(BaseModel):
    """Backoff configuration attached to a job or a handler registration."""

    kind: RetryKind = RetryKind.EXPONENTIAL
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=3600.0, ge=0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)
    max_attempts: int = Field(default=3, ge=1)

    @classmethod
    def fixed(cls, max_attempts: int, delay_seconds: float) -> "RetryPolicy":
        """Same delay before every retry."""
        return cls(
            kind=RetryKind.FIXED,
            base_delay_seconds=delay_seconds,
            max_delay_seconds=delay_seconds,
            jitter=0.0,
            max_attempts=max_attempts,
        )

    @classmethod
    def linear(
        cls,
        max_attempts: int,
        increment_seconds: float,
        max_delay_seconds: float | None = None,
    ) -> "RetryPolicy":
        """Delay grows by increment_seconds per attempt."""
        if max_delay_seconds is None:
            max_delay_seconds = increment_seconds * max_attempts
        return cls(
            kind=RetryKind.LINEAR,
            base_delay_seconds=increment_seconds,
            max_delay_seconds=max_delay_seconds,
            jitter=0.0,
            max_attempts=max_attempts,
        )

    @classmethod
    def exponential(
        cls,
        max_attempts: int,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 3600.0,
        jitter: float = 0.1,
    ) -> "RetryPolicy":
        """Delay doubles per attempt, capped at max_delay_seconds."""
        return cls(
            kind=RetryKind.EXPONENTIAL,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            jitter=jitter,
            max_attempts=max_attempts,
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        """Build the fleet-wide default policy."""
        return cls(
            kind=settings.retry_kind,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
            max_attempts=settings.default_max_attempts,
        )


def next_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: random.Random | None = None,
) -> timedelta:
    """
    Compute the delay before the given attempt.

    Args:
        policy: The retry policy.
        attempt: 1-based number of the attempt being scheduled.
        rng: Optional random source for jitter (module-level random by default).

    Returns:
        The delay, capped at policy.max_delay_seconds and never negative.
    """
    attempt = max(1, attempt)
    base = policy.base_delay_seconds
    cap = policy.max_delay_seconds

    if policy.kind == RetryKind.FIXED:
        delay = base
    elif policy.kind == RetryKind.LINEAR:
        delay = base * attempt
    else:
        # Clamp the exponent so huge attempt counts cannot overflow
        delay = base * (2 ** min(attempt - 1, 62))

    delay = min(delay, cap)

    if policy.jitter > 0:
        source = rng or random
        factor = source.uniform(1.0 - policy.jitter, 1.0 + policy.jitter)
        delay = min(delay * factor, cap)

    return timedelta(seconds=max(0.0, delay))
