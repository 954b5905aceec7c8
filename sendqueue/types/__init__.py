"""
Type definitions for the send queue.
Contains input/output type definitions, grouped by module.
"""

from sendqueue.types.api import (
    CampaignErrorsResponse,
    CampaignProgressResponse,
    CampaignResponse,
    CampaignStatusResponse,
    CreateSuppressionRequest,
    EnqueueResponse,
    HealthResponse,
    JobFailureResponse,
    ScheduleCampaignRequest,
    SuppressionResponse,
)
from sendqueue.types.job import (
    CampaignProgress,
    JobFailure,
    JobPayload,
    Lease,
    Leased,
    Recipient,
    SendJobInput,
    Unleased,
)

__all__ = [
    # API types
    "ScheduleCampaignRequest",
    "EnqueueResponse",
    "CampaignStatusResponse",
    "CampaignResponse",
    "CampaignProgressResponse",
    "JobFailureResponse",
    "CampaignErrorsResponse",
    "CreateSuppressionRequest",
    "SuppressionResponse",
    "HealthResponse",
    # Job types
    "JobPayload",
    "SendJobInput",
    "Recipient",
    "CampaignProgress",
    "JobFailure",
    "Lease",
    "Leased",
    "Unleased",
]
