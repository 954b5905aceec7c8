"""
Worker module.
Contains the send worker, mail transports and the send rate limiter.
"""

from sendqueue.worker.main import SendWorker, run

__all__ = ["SendWorker", "run"]
