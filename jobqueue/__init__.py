"""
Distributed Background Job Queue

Priority/delayed queues on a shared relational store, lease-based worker pools
with retry and dead-lettering, and a leader-elected cron scheduler.
"""

__version__ = "1.0.0"
