"""
Campaign Send Queue

A durable, database-backed send-job queue for bulk email campaigns with
exclusive leasing, stale-lock recovery, bounded retries, rate limiting,
A/B variant assignment, suppression gating and progress reporting.
"""

__version__ = "1.0.0"
