"""
Campaign progress computed from the send job table.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.constants import JobStatus
from sendqueue.db.repository import SendJobRepository
from sendqueue.types.job import CampaignProgress


class ProgressAggregator:
    """Read-only view of per-status job counts for a campaign."""

    def __init__(self, session: AsyncSession):
        self._jobs = SendJobRepository(session)

    async def progress(self, campaign_id: str) -> CampaignProgress:
        """
        Count a campaign's jobs by status.

        Args:
            campaign_id: The campaign identifier.

        Returns:
            CampaignProgress; all zeros for a campaign without jobs.
        """
        counts = await self._jobs.count_by_status(campaign_id)
        return CampaignProgress(
            campaign_id=campaign_id,
            queued_count=counts.get(JobStatus.QUEUED, 0),
            processing_count=counts.get(JobStatus.PROCESSING, 0),
            sent_count=counts.get(JobStatus.SENT, 0),
            failed_count=counts.get(JobStatus.FAILED, 0),
            skipped_count=counts.get(JobStatus.SKIPPED, 0),
        )
