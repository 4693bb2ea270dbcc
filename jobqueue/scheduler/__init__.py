"""
Scheduler module.
Contains scheduled job definitions, leader election and the scheduler loop.
"""

from jobqueue.scheduler.definitions import ScheduledJobDefinition, scheduled_job
from jobqueue.scheduler.leader import LeaderElector, LeaderFence
from jobqueue.scheduler.main import Scheduler, build_scheduler, run

__all__ = [
    "ScheduledJobDefinition",
    "scheduled_job",
    "LeaderElector",
    "LeaderFence",
    "Scheduler",
    "build_scheduler",
    "run",
]
