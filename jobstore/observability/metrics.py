"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    generate_latest,
)

from jobstore.constants import (
    METRIC_JOBS_ADDED,
    METRIC_JOBS_RECLAIMED,
    METRIC_JOBS_RESERVED,
    METRIC_RECLAIM_FAILURES,
    METRIC_RESERVE_EMPTY,
    METRIC_STORE_EVENTS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job store.

    Collects metrics for:
    - Job inserts
    - Reservations, successful and empty
    - Reclaimed jobs and per-record reclaim failures
    - Store lifecycle events
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_added = Counter(
            METRIC_JOBS_ADDED,
            "Total number of jobs added",
            registry=self._registry,
        )

        self.jobs_reserved = Counter(
            METRIC_JOBS_RESERVED,
            "Total number of jobs reserved by workers",
            ["worker_id"],
            registry=self._registry,
        )

        self.reserve_empty = Counter(
            METRIC_RESERVE_EMPTY,
            "Total number of reservations that found no ready job",
            registry=self._registry,
        )

        self.jobs_reclaimed = Counter(
            METRIC_JOBS_RECLAIMED,
            "Total number of jobs reclaimed by the sweep",
            ["reason"],
            registry=self._registry,
        )

        self.reclaim_failures = Counter(
            METRIC_RECLAIM_FAILURES,
            "Total number of per-record reclaim failures",
            ["reason"],
            registry=self._registry,
        )

        self.store_events = Counter(
            METRIC_STORE_EVENTS,
            "Total number of store lifecycle events",
            ["event_type"],
            registry=self._registry,
        )

    def record_job_added(self) -> None:
        """Record a job insert."""
        self.jobs_added.inc()

    def record_job_reserved(self, worker_id: str) -> None:
        """Record a successful reservation."""
        self.jobs_reserved.labels(worker_id=worker_id).inc()

    def record_reserve_empty(self) -> None:
        """Record a reservation that found nothing."""
        self.reserve_empty.inc()

    def record_jobs_reclaimed(self, reason: str, count: int) -> None:
        """Record reclaimed jobs."""
        if count:
            self.jobs_reclaimed.labels(reason=reason).inc(count)

    def record_reclaim_failure(self, reason: str) -> None:
        """Record a failed per-record reclaim."""
        self.reclaim_failures.labels(reason=reason).inc()

    def record_store_event(self, event_type: str) -> None:
        """Record a store lifecycle event."""
        self.store_events.labels(event_type=event_type).inc()

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
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
