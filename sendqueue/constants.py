"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Send job lifecycle states.

    State transitions:
    - QUEUED -> PROCESSING (lease acquired)
    - PROCESSING -> SENT (mailer accepted the message)
    - PROCESSING -> QUEUED (transient failure, rate limited, paused, stale lock)
    - PROCESSING -> FAILED (permanent failure or max attempts reached)
    - PROCESSING -> SKIPPED (recipient suppressed)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({JobStatus.SENT, JobStatus.FAILED, JobStatus.SKIPPED})


class CampaignStatus(StrEnum):
    """Campaign lifecycle states."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    PAUSED = "paused"
    SENT = "sent"


class Variant(StrEnum):
    """A/B test variants."""

    A = "A"
    B = "B"


class SuppressionReason(StrEnum):
    """Why an address must not be mailed."""

    UNSUBSCRIBED = "unsubscribed"
    EMAIL_INVALID = "email_invalid"


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_SPLIT_RATIO = 50
DEFAULT_RATE_LIMITER = "global"
ENQUEUE_CHUNK_SIZE = 500
STALE_LOCK_ERROR = "Recovered from stale lock"
RATE_WINDOW_MINUTE_SECONDS = 60
RATE_WINDOW_HOUR_SECONDS = 3600
MAX_ERROR_LENGTH = 2000
NO_RECIPIENTS_WARNING = "no_recipients"
SANDBOX_PREFIX = "sandbox:"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "send_queue_depth"
METRIC_JOBS_ENQUEUED = "send_jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "send_jobs_completed_total"
METRIC_SEND_DURATION = "send_duration_seconds"
METRIC_STALE_LOCKS_RECOVERED = "send_stale_locks_recovered_total"
METRIC_LEASE_ACQUIRED = "send_leases_acquired_total"
METRIC_RATE_LIMITED = "send_rate_limited_total"

# Trace span names
SPAN_ENQUEUE_CAMPAIGN = "enqueue_campaign"
SPAN_CLAIM_BATCH = "claim_batch"
SPAN_DISPATCH_JOB = "dispatch_job"
SPAN_RECOVER_STALE_LOCKS = "recover_stale_locks"
