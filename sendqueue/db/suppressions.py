"""
Suppression list repository.
Addresses on this list are never enrolled and never dispatched.
"""

import logging
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.constants import SuppressionReason
from sendqueue.db.connection import dialect_insert
from sendqueue.db.models import SuppressionEntry
from sendqueue.types.job import utcnow

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SuppressionRepository:
    """
    Repository for suppression entries keyed by normalized email.

    Used as the suppression gate at enrollment (bulk check) and again
    right before each dispatch (single check).
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, email: str) -> SuppressionEntry | None:
        stmt = select(SuppressionEntry).where(
            SuppressionEntry.email == normalize_email(email)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def is_suppressed(self, email: str) -> bool:
        """
        Check whether an address must not be mailed.

        Args:
            email: Recipient address in any case.

        Returns:
            True if the address has a suppression entry.
        """
        return await self.get(email) is not None

    async def suppressed_among(self, emails: Iterable[str]) -> set[str]:
        """
        Bulk suppression check.

        Args:
            emails: Candidate addresses.

        Returns:
            The normalized addresses that are suppressed.
        """
        normalized = sorted({normalize_email(e) for e in emails if e})
        suppressed: set[str] = set()
        for start in range(0, len(normalized), 500):
            chunk = normalized[start : start + 500]
            stmt = select(SuppressionEntry.email).where(SuppressionEntry.email.in_(chunk))
            result = await self._session.execute(stmt)
            suppressed.update(result.scalars().all())
        return suppressed

    async def add(
        self,
        email: str,
        reason: SuppressionReason,
        source: str | None = None,
        details: dict | None = None,
    ) -> SuppressionEntry:
        """
        Suppress an address. Adding an existing address keeps the first entry.

        Args:
            email: Address to suppress.
            reason: Why it is suppressed.
            source: Where the suppression came from (e.g. "unsubscribe", "admin").
            details: Free-form context.

        Returns:
            The stored entry.
        """
        normalized = normalize_email(email)
        stmt = (
            dialect_insert(self._session, SuppressionEntry)
            .values(
                email=normalized,
                reason=reason,
                source=source,
                details=details,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["email"])
        )
        result = await self._session.execute(stmt)
        if result.rowcount:
            logger.info(
                "Address suppressed",
                extra={"reason": reason.value, "source": source},
            )
        entry = await self.get(normalized)
        if entry is None:
            raise RuntimeError("Suppression entry should exist after insert")
        return entry

    async def remove(self, email: str) -> bool:
        """
        Reinstate an address.

        Args:
            email: Address to reinstate.

        Returns:
            True if an entry was removed.
        """
        stmt = delete(SuppressionEntry).where(
            SuppressionEntry.email == normalize_email(email)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0
