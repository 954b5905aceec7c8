"""
Stale lock recovery for send jobs.

The reaper runs on a fixed interval, independently of any worker, and
returns jobs whose lease outlived the lock TTL to the queue. This handles
worker crashes and gives at-least-once delivery.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import timedelta

from prometheus_client import start_http_server

from sendqueue.config import get_settings
from sendqueue.constants import SPAN_RECOVER_STALE_LOCKS
from sendqueue.db import close_db, get_engine, get_session_context, init_db
from sendqueue.db.repository import SendJobRepository
from sendqueue.observability.logging import setup_logging
from sendqueue.observability.metrics import get_metrics
from sendqueue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from sendqueue.types.job import utcnow
from sendqueue.worker.rate_limit import SendRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    recovered: int
    reservations_pruned: int
    queue_depth: int


class Reaper:
    """
    Stale lock reaper.

    Each sweep:
    1. Returns processing jobs locked longer than the lock TTL to queued
    2. Prunes rate-limit reservations older than the longest window
    3. Refreshes the queue depth gauge
    """

    def __init__(
        self,
        interval_seconds: float | None = None,
        lock_ttl: timedelta | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            interval_seconds: Seconds between sweeps.
            lock_ttl: Lease age after which a lock is stale.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.recovery_interval_seconds
        self.lock_ttl = lock_ttl or timedelta(seconds=settings.lock_ttl_seconds)
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"lock_ttl_seconds": self.lock_ttl.total_seconds()},
        )
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def _sweep(self) -> SweepResult:
        now = utcnow()
        with get_tracer().start_as_current_span(SPAN_RECOVER_STALE_LOCKS) as span:
            async with get_session_context() as session:
                repo = SendJobRepository(session)
                recovered = await repo.recover_stale_locks(now=now, lock_ttl=self.lock_ttl)
                pruned = await SendRateLimiter(session).prune(now)
                depth = await repo.queue_depth()
            span.set_attribute("jobs.recovered", recovered)

        self._metrics.record_stale_locks_recovered(recovered)
        self._metrics.update_queue_depth(depth)
        if recovered > 0:
            logger.warning(
                f"Recovered {recovered} send jobs from stale locks",
                extra={"recovered": recovered, "queue_depth": depth},
            )
        return SweepResult(recovered=recovered, reservations_pruned=pruned, queue_depth=depth)

    async def run_once(self) -> int:
        """
        Run one sweep (for testing or cron-style execution).

        Returns:
            Number of jobs recovered.
        """
        result = await self._sweep()
        return result.recovered


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging("reaper")
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine())
    if settings.reaper_metrics_port:
        start_http_server(settings.reaper_metrics_port)

    reaper = Reaper()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
