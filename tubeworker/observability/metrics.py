"""
Prometheus metrics collection.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    generate_latest,
    start_http_server,
    REGISTRY,
)

from tubeworker.constants import (
    METRIC_QUEUE_DEPTH,
    METRIC_JOBS_SENT,
    METRIC_JOBS_RESERVED,
    METRIC_JOBS_HANDLED,
    METRIC_JOBS_DELETED,
    METRIC_JOBS_RELEASED,
    METRIC_TRANSPORT_ERRORS,
    METRIC_HANDLE_DURATION,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for queue clients and workers.

    Collects metrics for:
    - Queue depth observed through stats-tube
    - Jobs sent, reserved, released and deleted
    - Handling outcomes and durations
    - Transport failures
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
            "Total jobs reported by the server for a tube",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_sent = Counter(
            METRIC_JOBS_SENT,
            "Total number of jobs put into a tube",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_reserved = Counter(
            METRIC_JOBS_RESERVED,
            "Total number of jobs reserved from a tube",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_handled = Counter(
            METRIC_JOBS_HANDLED,
            "Total number of handle() attempts",
            ["queue", "status"],
            registry=self._registry,
        )

        self.jobs_deleted = Counter(
            METRIC_JOBS_DELETED,
            "Total number of jobs deleted by workers",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_released = Counter(
            METRIC_JOBS_RELEASED,
            "Total number of jobs released back to a tube",
            ["queue"],
            registry=self._registry,
        )

        self.transport_errors = Counter(
            METRIC_TRANSPORT_ERRORS,
            "Total number of transport failures",
            ["operation"],
            registry=self._registry,
        )

        self.handle_duration = Histogram(
            METRIC_HANDLE_DURATION,
            "Job handle() duration in seconds",
            ["queue", "status"],
            buckets=(0.01, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

    def record_job_sent(self, queue: str) -> None:
        """Record a job put into a tube."""
        self.jobs_sent.labels(queue=queue).inc()

    def record_job_reserved(self, queue: str) -> None:
        """Record a job reservation."""
        self.jobs_reserved.labels(queue=queue).inc()

    def record_job_handled(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a handle() attempt."""
        self.jobs_handled.labels(queue=queue, status=status).inc()
        self.handle_duration.labels(queue=queue, status=status).observe(
            duration_seconds
        )

    def record_job_deleted(self, queue: str) -> None:
        self.jobs_deleted.labels(queue=queue).inc()

    def record_job_released(self, queue: str) -> None:
        self.jobs_released.labels(queue=queue).inc()

    def record_transport_error(self, operation: str) -> None:
        self.transport_errors.labels(operation=operation).inc()

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update the observed depth of a tube."""
        self.queue_depth.labels(queue=queue).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


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


def start_metrics_server(port: int) -> None:
    """
    Expose the default registry over HTTP for scraping.

    Args:
        port: Port to listen on.
    """
    start_http_server(port)
