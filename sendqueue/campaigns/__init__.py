"""
Campaign module.
Contains audience resolution, variant assignment, rendering, progress
aggregation and the send orchestration service.
"""

from sendqueue.campaigns.progress import ProgressAggregator
from sendqueue.campaigns.service import CampaignSendService, EnqueueResult
from sendqueue.campaigns.variants import assign_variant

__all__ = [
    "CampaignSendService",
    "EnqueueResult",
    "ProgressAggregator",
    "assign_variant",
]
