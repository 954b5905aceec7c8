"""
Send job repository for database operations.
Implements the core data access patterns for the send queue.
"""

import logging
import random
from collections.abc import Sequence
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.config import get_settings
from sendqueue.constants import (
    ENQUEUE_CHUNK_SIZE,
    MAX_ERROR_LENGTH,
    STALE_LOCK_ERROR,
    CampaignStatus,
    JobStatus,
    Variant,
)
from sendqueue.db.connection import dialect_insert
from sendqueue.db.models import Campaign, SendJob
from sendqueue.types.job import JobFailure, SendJobInput, utcnow

logger = logging.getLogger(__name__)


def _truncate(error: str) -> str:
    return error[:MAX_ERROR_LENGTH]


class SendJobRepository:
    """
    Repository for send job database operations.

    Every state transition is a single conditional UPDATE, so a transition
    either applies fully or not at all. Outcome transitions require the
    caller to still hold the lease (status processing, locked_by matching)
    and return None when it has been lost.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self._settings = get_settings()

    async def enqueue(self, jobs: Sequence[SendJobInput]) -> int:
        """
        Insert queued jobs, skipping recipients that already have one.

        Uses INSERT ... ON CONFLICT (campaign_id, subscriber_id) DO NOTHING
        so re-running enqueue for a campaign never duplicates a send.

        Args:
            jobs: Jobs to insert.

        Returns:
            Number of rows actually inserted.
        """
        inserted = await self.enqueue_by_variant(jobs)
        return sum(inserted.values())

    async def enqueue_by_variant(self, jobs: Sequence[SendJobInput]) -> dict[Variant, int]:
        """
        Same as enqueue, with inserted rows counted per variant.

        Args:
            jobs: Jobs to insert.

        Returns:
            Dictionary of variant -> rows inserted.
        """
        now = utcnow()
        rows = []
        seen: set[tuple[str, str]] = set()
        for job in jobs:
            key = (job.campaign_id, job.subscriber_id)
            if key in seen:
                continue
            seen.add(key)
            rows.append(
                {
                    "id": uuid4(),
                    "campaign_id": job.campaign_id,
                    "subscriber_id": job.subscriber_id,
                    "to_email": job.to_email,
                    "payload": job.payload.model_dump(mode="json"),
                    "variant": job.variant,
                    "status": JobStatus.QUEUED,
                    "attempts": 0,
                    "max_attempts": job.max_attempts,
                    "run_at": job.run_at or now,
                    "created_at": now,
                    "updated_at": now,
                }
            )

        inserted: dict[Variant, int] = {}
        for start in range(0, len(rows), ENQUEUE_CHUNK_SIZE):
            chunk = rows[start : start + ENQUEUE_CHUNK_SIZE]
            stmt = (
                dialect_insert(self._session, SendJob)
                .values(chunk)
                .on_conflict_do_nothing(index_elements=["campaign_id", "subscriber_id"])
                .returning(SendJob.id, SendJob.variant)
            )
            result = await self._session.execute(stmt)
            for _, variant in result.all():
                variant = Variant(variant)
                inserted[variant] = inserted.get(variant, 0) + 1

        if rows:
            logger.info(
                "Enqueued send jobs",
                extra={"requested": len(rows), "inserted": sum(inserted.values())},
            )
        return inserted

    async def load_by_id(self, job_id: UUID) -> SendJob | None:
        """
        Get a job by ID, always reflecting the current row.

        Args:
            job_id: The job UUID.

        Returns:
            The SendJob or None if not found.
        """
        stmt = (
            select(SendJob)
            .where(SendJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim_batch(
        self,
        worker_id: str,
        batch_size: int,
        now: datetime | None = None,
    ) -> list[SendJob]:
        """
        Lease up to batch_size due jobs for a worker.

        This is the critical path for job distribution. The candidate
        SELECT uses FOR UPDATE SKIP LOCKED so concurrent workers get
        disjoint batches, and the outer UPDATE re-checks status so a row
        is never leased twice.

        Args:
            worker_id: The worker identifier.
            batch_size: Maximum number of jobs to lease.
            now: Claim time, defaults to the current time.

        Returns:
            Leased jobs ordered by run_at, then created_at.
        """
        now = now or utcnow()

        candidates = (
            select(SendJob.id)
            .join(Campaign, Campaign.id == SendJob.campaign_id)
            .where(
                SendJob.status == JobStatus.QUEUED,
                SendJob.run_at <= now,
                SendJob.attempts < SendJob.max_attempts,
                Campaign.status != CampaignStatus.PAUSED,
            )
            .order_by(SendJob.run_at, SendJob.created_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True, of=SendJob)
        )

        stmt = (
            update(SendJob)
            .where(
                and_(
                    SendJob.id.in_(candidates.scalar_subquery()),
                    SendJob.status == JobStatus.QUEUED,
                )
            )
            .values(
                status=JobStatus.PROCESSING,
                locked_at=now,
                locked_by=worker_id,
                updated_at=now,
            )
            .returning(SendJob)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        jobs = sorted(result.scalars().all(), key=lambda j: (j.run_at, j.created_at))

        if jobs:
            logger.info(
                f"Claimed {len(jobs)} send jobs",
                extra={"worker_id": worker_id, "job_count": len(jobs)},
            )
        return jobs

    async def _transition(
        self,
        job_id: UUID,
        worker_id: str,
        *criteria,
        **values,
    ) -> SendJob | None:
        stmt = (
            update(SendJob)
            .where(
                and_(
                    SendJob.id == job_id,
                    SendJob.status == JobStatus.PROCESSING,
                    SendJob.locked_by == worker_id,
                    *criteria,
                )
            )
            .values(**values)
            .returning(SendJob)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()
        if job is None:
            logger.warning(
                "Lease lost before recording outcome",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
        return job

    async def mark_sent(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime | None = None,
    ) -> SendJob | None:
        """
        Mark a leased job as sent.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must hold the lease).
            now: Completion time.

        Returns:
            Updated SendJob or None if the lease was lost.
        """
        now = now or utcnow()
        return await self._transition(
            job_id,
            worker_id,
            status=JobStatus.SENT,
            locked_at=None,
            locked_by=None,
            last_error=None,
            completed_at=now,
            updated_at=now,
        )

    async def mark_skipped(
        self,
        job_id: UUID,
        worker_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> SendJob | None:
        """
        Mark a leased job as skipped, e.g. because the recipient is suppressed.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier.
            reason: Why the job was skipped.
            now: Completion time.

        Returns:
            Updated SendJob or None if the lease was lost.
        """
        now = now or utcnow()
        return await self._transition(
            job_id,
            worker_id,
            status=JobStatus.SKIPPED,
            skip_reason=reason,
            locked_at=None,
            locked_by=None,
            completed_at=now,
            updated_at=now,
        )

    async def record_failure(
        self,
        job: SendJob,
        worker_id: str,
        error: str,
        *,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> SendJob | None:
        """
        Record a failed send attempt. Either requeue with backoff or fail.

        The attempt count is compared against the value the worker leased
        so a concurrent recovery and re-lease cannot be double counted.

        Args:
            job: The leased job as returned by claim_batch.
            worker_id: The worker identifier.
            error: Error message.
            permanent: Whether retrying cannot succeed.
            now: Failure time.

        Returns:
            Updated SendJob or None if the lease was lost.
        """
        now = now or utcnow()
        attempts = job.attempts + 1

        if permanent or attempts >= job.max_attempts:
            values = {
                "status": JobStatus.FAILED,
                "completed_at": now,
            }
            logger.warning(
                f"Send job failed after {attempts} attempts",
                extra={"job_id": str(job.id), "error": error, "permanent": permanent},
            )
        else:
            backoff = min(
                self._settings.retry_backoff_max_seconds,
                self._settings.retry_backoff_base_seconds * attempts,
            )
            values = {
                "status": JobStatus.QUEUED,
                "run_at": now + timedelta(seconds=backoff),
            }
            logger.info(
                "Send job queued for retry",
                extra={"job_id": str(job.id), "attempt": attempts, "backoff": backoff},
            )

        return await self._transition(
            job.id,
            worker_id,
            SendJob.attempts == job.attempts,
            attempts=attempts,
            last_error=_truncate(error),
            locked_at=None,
            locked_by=None,
            updated_at=now,
            **values,
        )

    async def release_lease(
        self,
        job_id: UUID,
        worker_id: str,
        run_at: datetime | None = None,
        now: datetime | None = None,
    ) -> SendJob | None:
        """
        Return a leased job to the queue without consuming an attempt.

        Used for jobs that were throttled or whose campaign was paused.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier.
            run_at: When the job becomes due again, defaults to now.
            now: Release time.

        Returns:
            Updated SendJob or None if the lease was lost.
        """
        now = now or utcnow()
        return await self._transition(
            job_id,
            worker_id,
            status=JobStatus.QUEUED,
            locked_at=None,
            locked_by=None,
            run_at=run_at or now,
            updated_at=now,
        )

    async def recover_stale_locks(
        self,
        now: datetime | None = None,
        lock_ttl: timedelta | None = None,
    ) -> int:
        """
        Return jobs whose lease outlived the lock TTL to the queue.

        Called by the reaper to handle worker crashes. Attempts are left
        untouched since the send may never have been tried. Recovered jobs
        are pushed back by a small random delay so they do not all become
        due at the same instant.

        Args:
            now: Sweep time.
            lock_ttl: Lease age after which a lock is stale.

        Returns:
            Number of recovered jobs.
        """
        now = now or utcnow()
        if lock_ttl is None:
            lock_ttl = timedelta(seconds=self._settings.lock_ttl_seconds)
        jitter = random.uniform(0, self._settings.recovery_jitter_seconds)

        stmt = (
            update(SendJob)
            .where(
                and_(
                    SendJob.status == JobStatus.PROCESSING,
                    SendJob.locked_at < now - lock_ttl,
                )
            )
            .values(
                status=JobStatus.QUEUED,
                locked_at=None,
                locked_by=None,
                last_error=STALE_LOCK_ERROR,
                run_at=now + timedelta(seconds=jitter),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Recovered {count} send jobs with stale locks")

        return count

    async def reschedule_queued(
        self,
        campaign_id: str,
        run_at: datetime,
        from_run_at: datetime | None = None,
    ) -> int:
        """
        Move a campaign's untouched queued jobs to a new run time.

        Jobs that were already attempted or recovered keep their run time,
        so a repeated send or schedule never cuts a retry backoff short.

        Args:
            campaign_id: The campaign identifier.
            run_at: New due time.
            from_run_at: Only move jobs still due at this time, which
                leaves jobs released by the rate limiter in place.

        Returns:
            Number of jobs rescheduled.
        """
        conditions = [
            SendJob.campaign_id == campaign_id,
            SendJob.status == JobStatus.QUEUED,
            SendJob.attempts == 0,
            SendJob.last_error.is_(None),
        ]
        if from_run_at is not None:
            conditions.append(SendJob.run_at == from_run_at)

        stmt = (
            update(SendJob)
            .where(and_(*conditions))
            .values(run_at=run_at, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def recent_failures(self, campaign_id: str, limit: int = 20) -> list[JobFailure]:
        """
        Get the most recent failed jobs of a campaign.

        Args:
            campaign_id: The campaign identifier.
            limit: Maximum number of failures to return.

        Returns:
            Failures, newest first.
        """
        stmt = (
            select(SendJob)
            .where(
                and_(
                    SendJob.campaign_id == campaign_id,
                    SendJob.status == JobStatus.FAILED,
                )
            )
            .order_by(SendJob.updated_at.desc(), SendJob.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [
            JobFailure(
                job_id=job.id,
                to_email=job.to_email,
                attempts=job.attempts,
                last_error=job.last_error,
                completed_at=job.completed_at,
            )
            for job in result.scalars().all()
        ]

    async def queue_depth(self) -> int:
        """
        Get the number of queued jobs.

        Returns:
            Number of queued jobs.
        """
        stmt = select(func.count()).select_from(SendJob).where(
            SendJob.status == JobStatus.QUEUED
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_by_status(self, campaign_id: str) -> dict[JobStatus, int]:
        """
        Get job counts by status for a campaign.

        Args:
            campaign_id: The campaign identifier.

        Returns:
            Dictionary of status -> count, statuses with no jobs omitted.
        """
        stmt = (
            select(SendJob.status, func.count())
            .where(SendJob.campaign_id == campaign_id)
            .group_by(SendJob.status)
        )
        result = await self._session.execute(stmt)
        return {JobStatus(status): count for status, count in result.all()}
