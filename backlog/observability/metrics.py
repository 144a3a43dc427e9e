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
    start_http_server,
)

from backlog.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_CONTENDED,
    METRIC_LOCKS_CLEARED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth
    - Enqueued jobs and run outcomes
    - Job execution duration
    - Lease acquisitions, lost lease races and released locks
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
            "Number of jobs not yet in a terminal state",
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type"],
            registry=self._registry,
        )

        # outcome: succeeded or failed
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job runs by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 3600.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.lease_contended = Counter(
            METRIC_LEASE_CONTENDED,
            "Total number of lease attempts lost to another worker",
            ["worker_id"],
            registry=self._registry,
        )

        self.locks_cleared = Counter(
            METRIC_LOCKS_CLEARED,
            "Total number of leases released on worker shutdown",
            ["worker_id"],
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str) -> None:
        """Record an enqueued job."""
        self.jobs_enqueued.labels(job_type=job_type).inc()

    def record_job_completed(self, outcome: str, duration_seconds: float) -> None:
        """Record the outcome of a job run."""
        self.jobs_completed.labels(outcome=outcome).inc()
        self.job_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_lease_acquired(self, worker_id: str) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc()

    def record_lease_contended(self, worker_id: str) -> None:
        """Record a lost lease race."""
        self.lease_contended.labels(worker_id=worker_id).inc()

    def record_locks_cleared(self, worker_id: str, count: int) -> None:
        """Record released leases."""
        self.locks_cleared.labels(worker_id=worker_id).inc(count)

    def update_queue_depth(self, depth: int) -> None:
        """Update the queue depth gauge."""
        self.queue_depth.set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When given, also serve the default registry over HTTP on this
            port (used by worker processes, which have no API).

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port:
        start_http_server(port)
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
