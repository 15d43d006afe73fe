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

from taskpipe.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_DEAD_LETTERS_REPLAYED,
    METRIC_DELIVERIES,
    METRIC_IN_FLIGHT,
    METRIC_PUBLISH_REJECTED,
    METRIC_QUEUE_DEPTH,
    METRIC_RECONNECTS,
    METRIC_TASK_DURATION,
    METRIC_TASKS_SUBMITTED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task pipeline.

    Collects metrics for:
    - Queue depth
    - Task submissions and publish rejections
    - Delivery outcomes and execution duration
    - Worker in-flight deliveries
    - Broker reconnects
    - API requests
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
            "Number of ready messages in the queue",
            ["queue"],
            registry=self._registry,
        )

        self.tasks_submitted = Counter(
            METRIC_TASKS_SUBMITTED,
            "Total number of tasks accepted for delivery",
            ["queue"],
            registry=self._registry,
        )

        self.publish_rejected = Counter(
            METRIC_PUBLISH_REJECTED,
            "Total number of submissions refused by the broker or connection",
            ["queue", "reason"],
            registry=self._registry,
        )

        # Outcome is a DeliveryState terminal value
        self.deliveries = Counter(
            METRIC_DELIVERIES,
            "Total number of settled deliveries",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.task_duration = Histogram(
            METRIC_TASK_DURATION,
            "Handler execution duration in seconds",
            ["queue", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.in_flight = Gauge(
            METRIC_IN_FLIGHT,
            "Deliveries currently held by a worker",
            ["worker_id"],
            registry=self._registry,
        )

        self.reconnects = Counter(
            METRIC_RECONNECTS,
            "Total number of successful broker reconnects",
            registry=self._registry,
        )

        self.dead_letters_replayed = Counter(
            METRIC_DEAD_LETTERS_REPLAYED,
            "Total number of dead-lettered tasks moved back to the work queue",
            ["queue"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_task_submitted(self, queue: str) -> None:
        """Record an accepted submission."""
        self.tasks_submitted.labels(queue=queue).inc()

    def record_publish_rejected(self, queue: str, reason: str) -> None:
        """Record a refused submission."""
        self.publish_rejected.labels(queue=queue, reason=reason).inc()

    def record_delivery(
        self,
        queue: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record a settled delivery."""
        self.deliveries.labels(queue=queue, outcome=outcome).inc()
        if duration_seconds is not None:
            self.task_duration.labels(queue=queue, outcome=outcome).observe(
                duration_seconds
            )

    def set_in_flight(self, worker_id: str, count: int) -> None:
        """Update the number of deliveries a worker holds."""
        self.in_flight.labels(worker_id=worker_id).set(count)

    def record_reconnect(self) -> None:
        """Record a broker reconnect."""
        self.reconnects.inc()

    def record_dead_letters_replayed(self, queue: str, count: int) -> None:
        """Record dead-letter replays."""
        self.dead_letters_replayed.labels(queue=queue).inc(count)

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update queue depth."""
        self.queue_depth.labels(queue=queue).set(depth)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

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


def serve_metrics(port: int) -> None:
    """Expose the default registry over HTTP (for worker processes)."""
    start_http_server(port)
