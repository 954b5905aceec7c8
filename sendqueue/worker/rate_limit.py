"""
Durable send rate limiting.

Reservations live in the database so the ceiling holds across every worker
process and survives restarts.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.config import get_settings
from sendqueue.constants import (
    DEFAULT_RATE_LIMITER,
    RATE_WINDOW_HOUR_SECONDS,
    RATE_WINDOW_MINUTE_SECONDS,
)
from sendqueue.db.connection import dialect_insert
from sendqueue.db.models import SendRateLimit, SendReservation
from sendqueue.types.job import utcnow

logger = logging.getLogger(__name__)


class SendRateLimiter:
    """
    Sliding window limiter over per-minute and per-hour ceilings.

    A ceiling of 0 disables that window. Callers are serialized by
    updating the limiter's lock row first, so the usage read and the
    reservation insert happen under that row lock for the rest of the
    caller's transaction. Commit promptly after reserve().
    """

    def __init__(
        self,
        session: AsyncSession,
        per_minute: int | None = None,
        per_hour: int | None = None,
        name: str = DEFAULT_RATE_LIMITER,
    ):
        """
        Initialize the limiter.

        Args:
            session: The async database session.
            per_minute: Sends allowed per trailing minute, 0 = unlimited.
            per_hour: Sends allowed per trailing hour, 0 = unlimited.
            name: Limiter name, one lock row per name.
        """
        settings = get_settings()
        self._session = session
        self._name = name
        self.per_minute = settings.send_rate_per_minute if per_minute is None else per_minute
        self.per_hour = settings.send_rate_per_hour if per_hour is None else per_hour

    @property
    def unlimited(self) -> bool:
        return self.per_minute <= 0 and self.per_hour <= 0

    def _windows(self) -> list[tuple[int, timedelta]]:
        windows = []
        if self.per_minute > 0:
            windows.append((self.per_minute, timedelta(seconds=RATE_WINDOW_MINUTE_SECONDS)))
        if self.per_hour > 0:
            windows.append((self.per_hour, timedelta(seconds=RATE_WINDOW_HOUR_SECONDS)))
        return windows

    async def _lock(self, now: datetime) -> None:
        stmt = (
            update(SendRateLimit)
            .where(SendRateLimit.name == self._name)
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            insert_stmt = (
                dialect_insert(self._session, SendRateLimit)
                .values(name=self._name, updated_at=now)
                .on_conflict_do_nothing(index_elements=["name"])
            )
            await self._session.execute(insert_stmt)
            await self._session.execute(stmt)

    async def _used_since(self, since: datetime) -> int:
        stmt = select(func.coalesce(func.sum(SendReservation.amount), 0)).where(
            SendReservation.limiter == self._name,
            SendReservation.reserved_at > since,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar() or 0)

    async def reserve(self, n: int, now: datetime | None = None) -> int:
        """
        Reserve capacity for up to n sends.

        Args:
            n: Sends requested.
            now: Reservation time.

        Returns:
            Number of sends granted, between 0 and n.
        """
        if n <= 0:
            return 0
        if self.unlimited:
            return n

        now = now or utcnow()
        await self._lock(now)

        granted = n
        for ceiling, window in self._windows():
            used = await self._used_since(now - window)
            granted = min(granted, max(0, ceiling - used))

        if granted > 0:
            self._session.add(
                SendReservation(limiter=self._name, reserved_at=now, amount=granted)
            )
            await self._session.flush()

        if granted < n:
            logger.info(
                "Send rate limit reached",
                extra={"requested": n, "granted": granted, "limiter": self._name},
            )
        return granted

    async def next_available_at(self, now: datetime | None = None) -> datetime:
        """
        Earliest time an exhausted window frees capacity.

        Args:
            now: Reference time.

        Returns:
            now if no window is exhausted, otherwise when the oldest
            reservation of the most constrained window ages out.
        """
        now = now or utcnow()
        available_at = now
        for ceiling, window in self._windows():
            since = now - window
            if await self._used_since(since) < ceiling:
                continue
            stmt = select(func.min(SendReservation.reserved_at)).where(
                SendReservation.limiter == self._name,
                SendReservation.reserved_at > since,
            )
            result = await self._session.execute(stmt)
            oldest = result.scalar()
            if oldest is not None:
                available_at = max(available_at, oldest + window)
        return available_at

    async def prune(self, now: datetime | None = None) -> int:
        """
        Delete reservations older than the longest window.

        Args:
            now: Reference time.

        Returns:
            Number of rows deleted.
        """
        now = now or utcnow()
        stmt = delete(SendReservation).where(
            SendReservation.reserved_at <= now - timedelta(seconds=RATE_WINDOW_HOUR_SECONDS)
        )
        result = await self._session.execute(stmt)
        return result.rowcount
