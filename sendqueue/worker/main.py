"""
Worker process for sending campaign email.

The worker leases batches of due send jobs, re-checks suppression and
campaign state, reserves rate-limit capacity, hands each message to the
mailer and records the outcome.
"""

import asyncio
import logging
import os
import signal
import time
from datetime import timedelta

from prometheus_client import start_http_server

from sendqueue.campaigns.progress import ProgressAggregator
from sendqueue.campaigns.rendering import RenderError, render_email
from sendqueue.config import get_settings
from sendqueue.constants import (
    SANDBOX_PREFIX,
    SPAN_CLAIM_BATCH,
    SPAN_DISPATCH_JOB,
    TERMINAL_STATUSES,
    CampaignStatus,
    JobStatus,
)
from sendqueue.db import close_db, get_engine, get_session_context, init_db
from sendqueue.db.campaigns import CampaignRepository
from sendqueue.db.models import SendJob
from sendqueue.db.repository import SendJobRepository
from sendqueue.db.suppressions import SuppressionRepository
from sendqueue.observability.logging import bind_context, setup_logging
from sendqueue.observability.metrics import get_metrics
from sendqueue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from sendqueue.types.job import JobPayload, utcnow
from sendqueue.worker.mailer import Mailer, SendOutcome, build_mailer
from sendqueue.worker.rate_limit import SendRateLimiter

logger = logging.getLogger(__name__)


def _counts_toward_campaign(job: SendJob) -> bool:
    # Sandbox sends leave the campaign's aggregate counters alone
    return not job.subscriber_id.startswith(SANDBOX_PREFIX)


class SendWorker:
    """
    Send worker that polls for and dispatches send jobs.

    Features:
    - Atomic batch leasing using FOR UPDATE SKIP LOCKED
    - Suppression re-check right before dispatch
    - Durable rate limiting shared by every worker
    - Sequential dispatch in lease order with a send timeout
    - Graceful shutdown on SIGTERM/SIGINT

    There is no lease heartbeat: a dispatch that outlives the lock TTL can
    be recovered and sent again by another worker (at-least-once).
    """

    def __init__(
        self,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        mailer: Mailer | None = None,
        send_rate_per_minute: int | None = None,
        send_rate_per_hour: int | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            batch_size: Number of jobs to lease per poll.
            poll_interval: Seconds between polls when the queue is empty.
            mailer: Mail transport. Defaults to SMTP, or dry run if enabled.
            send_rate_per_minute: Overrides SEND_RATE_PER_MINUTE.
            send_rate_per_hour: Overrides SEND_RATE_PER_HOUR.
        """
        settings = get_settings()

        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.send_timeout = settings.smtp_timeout_seconds
        self.lock_ttl = timedelta(seconds=settings.lock_ttl_seconds)
        self.mailer = mailer or build_mailer(settings)
        self._send_rate_per_minute = send_rate_per_minute
        self._send_rate_per_hour = send_rate_per_hour

        self._running = False
        self._throttled = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the worker."""
        bind_context(worker_id=self.worker_id)
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "batch_size": self.batch_size},
        )

        self._running = True

        while self._running:
            try:
                leased = await self.run_once()

                if leased == 0 or self._throttled:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker after the current batch."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> int:
        """
        Lease and process a single batch.

        Returns:
            Number of jobs leased.
        """
        self._throttled = False
        leased = await self._claim()
        if not leased:
            return 0

        jobs = await self._screen(leased)
        jobs = await self._throttle(jobs)

        for job in jobs:
            await self._dispatch(job)

        return len(leased)

    async def _claim(self) -> list[SendJob]:
        with get_tracer().start_as_current_span(SPAN_CLAIM_BATCH) as span:
            async with get_session_context() as session:
                jobs = await SendJobRepository(session).claim_batch(
                    worker_id=self.worker_id,
                    batch_size=self.batch_size,
                )
            span.set_attribute("jobs.leased", len(jobs))

        if jobs:
            self._metrics.record_lease_acquired(self.worker_id, len(jobs))
        return jobs

    async def _screen(self, jobs: list[SendJob]) -> list[SendJob]:
        """
        Drop jobs that must not be sent right now.

        Jobs of a paused campaign are released back to the queue and jobs
        of suppressed recipients are skipped. A scheduled campaign whose
        first job was leased moves to sending.
        """
        remaining = []
        finished_campaigns = set()

        async with get_session_context() as session:
            repo = SendJobRepository(session)
            campaigns = CampaignRepository(session)
            suppressions = SuppressionRepository(session)
            statuses: dict[str, CampaignStatus | None] = {}

            for job in jobs:
                if job.campaign_id not in statuses:
                    campaign = await campaigns.get(job.campaign_id)
                    status = campaign.status if campaign else None
                    if status == CampaignStatus.SCHEDULED:
                        await campaigns.transition(
                            job.campaign_id, [CampaignStatus.SCHEDULED], CampaignStatus.SENDING
                        )
                        status = CampaignStatus.SENDING
                    statuses[job.campaign_id] = status

                if statuses[job.campaign_id] == CampaignStatus.PAUSED:
                    await repo.release_lease(job.id, self.worker_id)
                    continue

                entry = await suppressions.get(job.to_email)
                if entry is not None:
                    skipped = await repo.mark_skipped(job.id, self.worker_id, entry.reason.value)
                    if skipped is not None:
                        if _counts_toward_campaign(job):
                            await campaigns.increment_counter(
                                job.campaign_id, JobStatus.SKIPPED
                            )
                        self._metrics.record_job_completed(JobStatus.SKIPPED.value)
                        finished_campaigns.add(job.campaign_id)
                        logger.info(
                            "Skipped suppressed recipient",
                            extra={"job_id": str(job.id), "reason": entry.reason.value},
                        )
                    continue

                remaining.append(job)

        for campaign_id in finished_campaigns:
            await self._complete_campaign_if_finished(campaign_id)
        return remaining

    async def _throttle(self, jobs: list[SendJob]) -> list[SendJob]:
        """
        Reserve rate-limit capacity for the batch.

        Jobs beyond the granted capacity are released, without consuming
        an attempt, to become due when the limiter frees capacity.
        """
        if not jobs:
            return jobs

        async with get_session_context() as session:
            limiter = SendRateLimiter(
                session,
                per_minute=self._send_rate_per_minute,
                per_hour=self._send_rate_per_hour,
            )
            granted = await limiter.reserve(len(jobs))
            if granted == len(jobs):
                return jobs

            now = utcnow()
            next_run_at = await limiter.next_available_at(now)
            repo = SendJobRepository(session)
            for job in jobs[granted:]:
                await repo.release_lease(job.id, self.worker_id, run_at=next_run_at, now=now)

        held_back = len(jobs) - granted
        self._throttled = True
        self._metrics.record_rate_limited(held_back)
        logger.info(
            "Send rate limited",
            extra={
                "worker_id": self.worker_id,
                "granted": granted,
                "held_back": held_back,
                "next_run_at": next_run_at.isoformat(),
            },
        )
        return jobs[:granted]

    async def _send(self, job: SendJob) -> SendOutcome:
        try:
            payload = JobPayload.model_validate(job.payload)
            rendered = render_email(payload.subject, payload.html, payload.merge_fields)
        except RenderError as e:
            return SendOutcome.failure(str(e), permanent=True)
        except ValueError as e:
            return SendOutcome.failure(f"Invalid job payload: {e}", permanent=True)

        try:
            return await asyncio.wait_for(
                self.mailer.send(job.to_email, rendered.subject, rendered.html),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            return SendOutcome.failure(f"Send timed out after {self.send_timeout}s")
        except Exception as e:
            logger.exception(
                "Exception sending job",
                extra={"job_id": str(job.id), "error": str(e)},
            )
            return SendOutcome.failure(f"Worker exception: {e}")

    async def _dispatch(self, job: SendJob) -> JobStatus | None:
        """
        Send one leased job and record the outcome.

        Args:
            job: The leased job.

        Returns:
            The job's new status, or None if the lease was lost.
        """
        if job.lease.is_stale(utcnow(), self.lock_ttl):
            # The reaper may already have handed this job to another worker
            async with get_session_context() as session:
                await SendJobRepository(session).release_lease(job.id, self.worker_id)
            logger.warning(
                "Lease expired before dispatch, job not sent",
                extra={"job_id": str(job.id), "worker_id": self.worker_id},
            )
            return None

        start_time = time.time()

        with get_tracer().start_as_current_span(SPAN_DISPATCH_JOB) as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("campaign_id", job.campaign_id)
            span.set_attribute("attempt", job.attempts + 1)
            outcome = await self._send(job)
            span.set_attribute("send.ok", outcome.ok)

        duration = time.time() - start_time

        async with get_session_context() as session:
            repo = SendJobRepository(session)
            if outcome.ok:
                updated = await repo.mark_sent(job.id, self.worker_id)
            else:
                updated = await repo.record_failure(
                    job,
                    self.worker_id,
                    outcome.error or "Unknown error",
                    permanent=outcome.permanent,
                )

            if updated is None:
                return None

            if updated.status in TERMINAL_STATUSES and _counts_toward_campaign(job):
                await CampaignRepository(session).increment_counter(
                    job.campaign_id, updated.status
                )
            status = updated.status

        self._metrics.record_job_completed(status.value, duration)
        logger.info(
            "Send job processed",
            extra={
                "job_id": str(job.id),
                "status": status.value,
                "duration": f"{duration:.2f}s",
                "error": outcome.error,
            },
        )

        if status in TERMINAL_STATUSES:
            await self._complete_campaign_if_finished(job.campaign_id)
        return status

    async def _complete_campaign_if_finished(self, campaign_id: str) -> None:
        async with get_session_context() as session:
            progress = await ProgressAggregator(session).progress(campaign_id)
            if progress.total_count == 0 or not progress.is_finished:
                return
            changed = await CampaignRepository(session).transition(
                campaign_id,
                [CampaignStatus.SENDING, CampaignStatus.SCHEDULED],
                CampaignStatus.SENT,
            )
        if changed:
            logger.info(
                f"Campaign {progress.completion_notice}",
                extra={
                    "campaign_id": campaign_id,
                    "sent": progress.sent_count,
                    "failed": progress.failed_count,
                    "skipped": progress.skipped_count,
                },
            )


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging("worker")
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine())
    if settings.worker_metrics_port:
        start_http_server(settings.worker_metrics_port)

    worker = SendWorker(worker_id=settings.worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
