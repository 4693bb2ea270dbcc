"""
Database module.
Contains database connection, models, repositories and the queue store.
"""

from jobqueue.db.connection import (
    close_db,
    get_async_session,
    get_engine,
    get_session_factory,
    init_db,
    make_session_factory,
)
from jobqueue.db.models import Base, Job, JobAttempt, ScheduleState, SchedulerLease, WorkerRecord
from jobqueue.db.store import QueueStore

__all__ = [
    "get_async_session",
    "get_session_factory",
    "make_session_factory",
    "get_engine",
    "init_db",
    "close_db",
    "Job",
    "JobAttempt",
    "SchedulerLease",
    "ScheduleState",
    "WorkerRecord",
    "Base",
    "QueueStore",
]
