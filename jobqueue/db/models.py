"""
SQLAlchemy database models.
Defines the jobs, job_attempts, scheduler_leases, scheduled_definitions
and workers tables.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import (
    ACTIVE_STATES,
    PAYLOAD_TYPE_JSON,
    AttemptOutcome,
    JobPriority,
    JobState,
)
from jobqueue.types.job import decode_payload

JSONType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_STATE_VALUES = ", ".join(f"'{state.value}'" for state in ACTIVE_STATES)
_ACTIVE_DEDUP_WHERE = text(
    f"dedup_key IS NOT NULL AND state IN ({_ACTIVE_STATE_VALUES})"
)


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions go through the repository.

    Key constraints:
    - (queue, dedup_key) is unique among pending/delayed/leased jobs
    - lease_owner and lease_expires_at are set exactly while state is LEASED
    - attempts only grows, except for a manual retry from the dead-letter set
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Routing
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    handler: Mapped[str] = mapped_column(String(255), nullable=False)

    # Job payload
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, default=b"")
    payload_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default=PAYLOAD_TYPE_JSON,
    )

    # State and priority
    state: Mapped[JobState] = mapped_column(
        Enum(JobState, name="job_state", create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=JobState.PENDING,
    )
    priority: Mapped[JobPriority] = mapped_column(
        Enum(JobPriority, name="job_priority", create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=JobPriority.NORMAL,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=300.0)
    retry_policy: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Deduplication and tracing
    dedup_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    leased_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_letter_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Result storage (optional)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        # One live job per dedup key within a queue
        Index(
            "uq_jobs_active_dedup",
            "queue",
            "dedup_key",
            unique=True,
            postgresql_where=_ACTIVE_DEDUP_WHERE,
            sqlite_where=_ACTIVE_DEDUP_WHERE,
        ),
        # Index for efficient queue polling
        Index("ix_jobs_queue_poll", "queue", "state", "scheduled_at"),
        # Index for lease expiry checks
        Index("ix_jobs_lease_expiry", "state", "lease_expires_at"),
    )

    def decoded_payload(self) -> Any:
        """Decode the payload according to its type tag; raw bytes otherwise."""
        return decode_payload(self.payload, self.payload_type)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue}, handler={self.handler}, "
            f"state={self.state}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobAttempt(Base):
    """One execution attempt of a job, kept for dead-letter inspection."""

    __tablename__ = "job_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome: Mapped[AttemptOutcome] = mapped_column(
        Enum(AttemptOutcome, name="attempt_outcome", create_constraint=True, values_callable=_enum_values),
        nullable=False,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)

    def __repr__(self) -> str:
        return f"JobAttempt(job_id={self.job_id}, attempt={self.attempt}, outcome={self.outcome})"


class SchedulerLease(Base):
    """
    Time-bounded leadership token.

    The holder may enqueue scheduled jobs until expires_at. fencing_token
    increases every time the lease changes hands.
    """

    __tablename__ = "scheduler_leases"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    fencing_token: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"SchedulerLease(name={self.name}, holder={self.holder}, expires_at={self.expires_at})"


class ScheduleState(Base):
    """
    Fleet-wide runtime state of one scheduled job definition.

    Definitions themselves live in code; this row carries what operators
    change at runtime so every scheduler instance sees the same flag.
    A missing row means the definition's code default applies.
    """

    __tablename__ = "scheduled_definitions"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Firings at or before this moment are skipped after a re-enable
    enabled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_fire_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"ScheduleState(name={self.name}, enabled={self.enabled})"


class WorkerRecord(Base):
    """A running worker pool, kept alive by its heartbeat."""

    __tablename__ = "workers"

    worker_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    queues: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    concurrency: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    active_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shutting_down: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"WorkerRecord(worker_id={self.worker_id}, last_heartbeat_at={self.last_heartbeat_at})"
