"""
Reaper module.
Contains the stale lock reaper that returns abandoned send jobs to the queue.
"""

from sendqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
