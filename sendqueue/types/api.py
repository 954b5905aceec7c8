"""
API request and response type definitions.
"""

from datetime import UTC, datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from sendqueue.constants import CampaignStatus, SuppressionReason


class ScheduleCampaignRequest(BaseModel):
    """Request body for scheduling a campaign."""

    scheduled_at: datetime = Field(..., description="When the campaign starts sending")

    @field_validator("scheduled_at")
    @classmethod
    def _to_naive_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value


class EnqueueResponse(BaseModel):
    """Response body after enqueueing a campaign."""

    campaign_id: str
    queued: int
    suppressed: int
    status: CampaignStatus | None
    warnings: list[str] = Field(default_factory=list)


class CampaignStatusResponse(BaseModel):
    """Response body after a campaign status change."""

    campaign_id: str
    status: CampaignStatus


class CampaignResponse(BaseModel):
    """Campaign details with the fast-path aggregate counters."""

    id: str
    name: str
    status: CampaignStatus
    ab_enabled: bool
    split_ratio: int
    scheduled_at: datetime | None
    queued_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    created_at: datetime
    updated_at: datetime


class CampaignProgressResponse(BaseModel):
    """Exact per-status job counts for a campaign."""

    campaign_id: str
    queued_count: int
    processing_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    total_count: int
    is_finished: bool
    completion_notice: str | None


class JobFailureResponse(BaseModel):
    job_id: UUID
    to_email: str
    attempts: int
    last_error: str | None
    completed_at: datetime | None


class CampaignErrorsResponse(BaseModel):
    """Most recent failed sends of a campaign."""

    campaign_id: str
    errors: list[JobFailureResponse]


class CreateSuppressionRequest(BaseModel):
    """Request body for suppressing an address."""

    email: str = Field(..., min_length=3, max_length=320)
    reason: SuppressionReason = SuppressionReason.UNSUBSCRIBED
    source: str | None = Field(default="admin", max_length=100)
    details: dict | None = None

    @field_validator("email")
    @classmethod
    def _looks_like_email(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.rpartition("@")
        if not local or "." not in domain:
            raise ValueError("email must be an address like user@example.com")
        return value


class SuppressionResponse(BaseModel):
    email: str
    reason: SuppressionReason
    source: str | None
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime
