"""
Send job type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from sendqueue.constants import DEFAULT_MAX_ATTEMPTS, Variant


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the stored columns."""
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class Unleased:
    """The job is not held by any worker."""

    def is_stale(self, now: datetime, ttl: timedelta) -> bool:
        return False


@dataclass(frozen=True)
class Leased:
    """
    The job is held by a worker since a point in time.

    There is no stored expiry: a lease is stale once it has been held
    longer than the configured lock TTL.
    """

    worker_id: str
    since: datetime

    def is_stale(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.since > ttl


Lease = Unleased | Leased


class JobPayload(BaseModel):
    """
    Content frozen into a job at enqueue time.
    Later edits to the campaign or template do not affect queued jobs.
    """

    variant: Variant = Variant.A
    subject: str
    html: str
    template_id: str | None = None
    merge_fields: dict[str, Any] = Field(default_factory=dict)


@dataclass
class SendJobInput:
    """A job to be enqueued for one recipient of a campaign."""

    campaign_id: str
    subscriber_id: str
    to_email: str
    payload: JobPayload
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    run_at: datetime | None = None

    @property
    def variant(self) -> Variant:
        return self.payload.variant


@dataclass
class Recipient:
    """An audience member resolved for a campaign."""

    subscriber_id: str
    email: str
    merge_fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class CampaignProgress:
    """
    Per-status job counts for one campaign.
    Computed from the job table, so it is exact regardless of counters.
    """

    campaign_id: str
    queued_count: int = 0
    processing_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0

    @property
    def total_count(self) -> int:
        return (
            self.queued_count
            + self.processing_count
            + self.sent_count
            + self.failed_count
            + self.skipped_count
        )

    @property
    def is_finished(self) -> bool:
        return self.queued_count == 0 and self.processing_count == 0

    @property
    def completion_notice(self) -> str | None:
        """Admin-facing summary once every job is terminal."""
        if not self.is_finished:
            return None
        if self.failed_count > 0:
            return "finished with failures"
        return "sent"


@dataclass
class JobFailure:
    """A failed job surfaced to the admin as a recent error."""

    job_id: UUID
    to_email: str
    attempts: int
    last_error: str | None
    completed_at: datetime | None
