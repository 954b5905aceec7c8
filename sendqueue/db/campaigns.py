"""
Campaign repository for database operations.
"""

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.constants import CampaignStatus, JobStatus
from sendqueue.db.models import Campaign, EmailTemplate
from sendqueue.types.job import utcnow

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = {
    JobStatus.QUEUED: "queued_count",
    JobStatus.SENT: "sent_count",
    JobStatus.FAILED: "failed_count",
    JobStatus.SKIPPED: "skipped_count",
}


class CampaignRepository:
    """
    Repository for campaign reads and status transitions.

    Status changes are compare-and-set updates so concurrent workers and
    admin actions never overwrite each other's transitions.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, campaign_id: str) -> Campaign | None:
        """
        Get a campaign by ID, always reflecting the current row.

        Args:
            campaign_id: The campaign identifier.

        Returns:
            The Campaign or None if not found.
        """
        stmt = (
            select(Campaign)
            .where(Campaign.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_template(self, template_id: str) -> EmailTemplate | None:
        stmt = select(EmailTemplate).where(EmailTemplate.id == template_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        campaign_id: str,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
    ) -> bool:
        """
        Move a campaign to a new status if it is in one of the given statuses.

        Args:
            campaign_id: The campaign identifier.
            from_statuses: Statuses the transition is allowed from.
            to_status: Target status.

        Returns:
            True if the campaign was updated.
        """
        stmt = (
            update(Campaign)
            .where(
                and_(
                    Campaign.id == campaign_id,
                    Campaign.status.in_(list(from_statuses)),
                )
            )
            .values(status=to_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        changed = result.rowcount > 0
        if changed:
            logger.info(
                "Campaign status changed",
                extra={"campaign_id": campaign_id, "status": to_status.value},
            )
        return changed

    async def set_schedule(
        self,
        campaign_id: str,
        scheduled_at: datetime | None,
        status: CampaignStatus,
    ) -> None:
        stmt = (
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(scheduled_at=scheduled_at, status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def increment_counter(
        self,
        campaign_id: str,
        status: JobStatus,
        amount: int = 1,
    ) -> None:
        """
        Atomically bump the aggregate counter for a job status.

        Args:
            campaign_id: The campaign identifier.
            status: Job status whose counter to bump.
            amount: Increment, ignored when zero.
        """
        column = _COUNTER_COLUMNS.get(status)
        if column is None or amount == 0:
            return
        counter = getattr(Campaign, column)
        stmt = (
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values({column: counter + amount})
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
