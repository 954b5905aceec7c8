"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from sendqueue.constants import (
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_RATE_LIMITED,
    METRIC_SEND_DURATION,
    METRIC_STALE_LOCKS_RECOVERED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the send queue.

    Collects metrics for:
    - Queue depth
    - Jobs enqueued per variant and completed per status
    - Send duration
    - Leases acquired and stale locks recovered
    - Jobs held back by the rate limiter
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of queued send jobs",
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of send jobs enqueued",
            ["variant"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of send job outcomes",
            ["status"],
            registry=self._registry,
        )

        self.send_duration = Histogram(
            METRIC_SEND_DURATION,
            "Time spent handing a message to the mail provider",
            ["status"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.stale_locks_recovered = Counter(
            METRIC_STALE_LOCKS_RECOVERED,
            "Total number of send jobs recovered from stale locks",
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of send job leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.rate_limited = Counter(
            METRIC_RATE_LIMITED,
            "Total number of leased jobs released by the rate limiter",
            registry=self._registry,
        )

    def record_jobs_enqueued(self, variant: str, count: int = 1) -> None:
        if count > 0:
            self.jobs_enqueued.labels(variant=variant).inc(count)

    def record_job_completed(self, status: str, duration_seconds: float | None = None) -> None:
        """Record a job outcome and, when a send was attempted, its duration."""
        self.jobs_completed.labels(status=status).inc()
        if duration_seconds is not None:
            self.send_duration.labels(status=status).observe(duration_seconds)

    def record_stale_locks_recovered(self, count: int) -> None:
        if count > 0:
            self.stale_locks_recovered.inc(count)

    def record_lease_acquired(self, worker_id: str, count: int = 1) -> None:
        self.lease_acquired.labels(worker_id=worker_id).inc(count)

    def record_rate_limited(self, count: int) -> None:
        if count > 0:
            self.rate_limited.inc(count)

    def update_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
