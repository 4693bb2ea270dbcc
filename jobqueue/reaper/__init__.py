"""
Reaper module.
Contains the lease reaper for recovering expired jobs.
"""

from jobqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
