"""Initial schema with jobs, job_attempts, scheduler_leases, scheduled_definitions and workers tables

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATES = ("pending", "delayed", "leased", "completed", "dead_lettered", "cancelled")
JOB_PRIORITIES = ("low", "normal", "high", "critical")
ATTEMPT_OUTCOMES = (
    "succeeded",
    "failed",
    "timed_out",
    "lease_expired",
    "unknown_handler",
    "cancelled",
)


def _create_enum(name: str, values: Sequence[str]) -> None:
    labels = ", ".join(f"'{value}'" for value in values)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE {name} AS ENUM ({labels});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)


def upgrade() -> None:
    _create_enum("job_state", JOB_STATES)
    _create_enum("job_priority", JOB_PRIORITIES)
    _create_enum("attempt_outcome", ATTEMPT_OUTCOMES)

    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("handler", sa.String(255), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("payload_type", sa.String(100), nullable=False, server_default="application/json"),
        sa.Column(
            "state",
            postgresql.ENUM(*JOB_STATES, name="job_state", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "priority",
            postgresql.ENUM(*JOB_PRIORITIES, name="job_priority", create_type=False),
            nullable=False,
            server_default="normal",
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("timeout_seconds", sa.Float, nullable=False, server_default="300"),
        sa.Column("retry_policy", postgresql.JSONB, nullable=True),
        sa.Column("dedup_key", sa.String(255), nullable=True),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("tags", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.Column("leased_at", sa.DateTime, nullable=True),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("scheduled_at", sa.DateTime, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("dead_letter_reason", sa.Text, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_jobs_correlation_id", "jobs", ["correlation_id"])
    op.create_index("ix_jobs_queue_poll", "jobs", ["queue", "state", "scheduled_at"])
    op.create_index("ix_jobs_lease_expiry", "jobs", ["state", "lease_expires_at"])

    # One live job per dedup key within a queue
    op.execute("""
        CREATE UNIQUE INDEX uq_jobs_active_dedup
        ON jobs (queue, dedup_key)
        WHERE dedup_key IS NOT NULL AND state IN ('pending', 'delayed', 'leased')
    """)

    # Attempt history
    op.create_table(
        "job_attempts",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False),
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column(
            "outcome",
            postgresql.ENUM(*ATTEMPT_OUTCOMES, name="attempt_outcome", create_type=False),
            nullable=False,
        ),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("finished_at", sa.DateTime, nullable=False),
        sa.Column("duration_ms", sa.Float, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_job_attempts_job_id", "job_attempts", ["job_id"])

    # Leadership leases
    op.create_table(
        "scheduler_leases",
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("fencing_token", sa.Integer, nullable=False, server_default="1"),
        sa.Column("acquired_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    # Runtime state of scheduled definitions
    op.create_table(
        "scheduled_definitions",
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("enabled_at", sa.DateTime, nullable=True),
        sa.Column("last_fire_at", sa.DateTime, nullable=True),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    # Worker registry
    op.create_table(
        "workers",
        sa.Column("worker_id", sa.String(255), nullable=False),
        sa.Column("queues", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("concurrency", sa.Integer, nullable=False, server_default="1"),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("last_heartbeat_at", sa.DateTime, nullable=False),
        sa.Column("active_jobs", sa.Integer, nullable=False, server_default="0"),
        sa.Column("jobs_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("jobs_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("shutting_down", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("worker_id"),
    )
    op.create_index("ix_workers_last_heartbeat_at", "workers", ["last_heartbeat_at"])


def downgrade() -> None:
    op.drop_index("ix_workers_last_heartbeat_at")
    op.drop_table("workers")
    op.drop_table("scheduled_definitions")

    op.drop_table("scheduler_leases")

    op.drop_index("ix_job_attempts_job_id")
    op.drop_table("job_attempts")

    op.execute("DROP INDEX IF EXISTS uq_jobs_active_dedup")
    op.drop_index("ix_jobs_lease_expiry")
    op.drop_index("ix_jobs_queue_poll")
    op.drop_index("ix_jobs_correlation_id")
    op.drop_table("jobs")

    # Drop enums
    op.execute("DROP TYPE IF EXISTS attempt_outcome")
    op.execute("DROP TYPE IF EXISTS job_priority")
    op.execute("DROP TYPE IF EXISTS job_state")
