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

from jobqueue.constants import (
    METRIC_ACTIVE_WORKERS,
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ACTIVE,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DEAD_LETTERED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FAILED,
    METRIC_JOBS_PENDING,
    METRIC_JOBS_RETRIED,
    METRIC_LEASES_RECLAIMED,
    METRIC_SCHEDULED_FIRED,
    METRIC_SCHEDULER_LEADER,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Job enqueues, completions, failures, retries and dead-letters
    - Pending and active job gauges per queue
    - Job execution duration
    - Lease reclamation
    - Worker slots and scheduler leadership
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "priority"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs completed successfully",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_failed = Counter(
            METRIC_JOBS_FAILED,
            "Total number of failed job attempts",
            ["queue", "reason"],
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of jobs rescheduled for another attempt",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_dead_lettered = Counter(
            METRIC_JOBS_DEAD_LETTERED,
            "Total number of jobs moved to the dead-letter set",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_pending = Gauge(
            METRIC_JOBS_PENDING,
            "Number of pending or delayed jobs",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_active = Gauge(
            METRIC_JOBS_ACTIVE,
            "Number of leased jobs",
            ["queue"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.leases_reclaimed = Counter(
            METRIC_LEASES_RECLAIMED,
            "Total number of expired leases reclaimed",
            registry=self._registry,
        )

        self.active_workers = Gauge(
            METRIC_ACTIVE_WORKERS,
            "Number of running worker slots",
            registry=self._registry,
        )

        self.scheduler_is_leader = Gauge(
            METRIC_SCHEDULER_LEADER,
            "1 if this scheduler instance holds leadership",
            ["identity"],
            registry=self._registry,
        )

        self.scheduled_fired = Counter(
            METRIC_SCHEDULED_FIRED,
            "Total number of scheduled firings enqueued",
            ["definition"],
            registry=self._registry,
        )

        # API requests counter
        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        # API latency histogram
        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_enqueued(self, queue: str, priority: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(queue=queue, priority=priority).inc()

    def record_job_completed(self, queue: str, duration_seconds: float) -> None:
        """Record a successful job completion."""
        self.jobs_completed.labels(queue=queue).inc()
        self.job_duration.labels(queue=queue, outcome="succeeded").observe(duration_seconds)

    def record_job_failed(self, queue: str, reason: str, duration_seconds: float | None = None) -> None:
        """Record a failed attempt (handler error, timeout, unknown handler)."""
        self.jobs_failed.labels(queue=queue, reason=reason).inc()
        if duration_seconds is not None:
            self.job_duration.labels(queue=queue, outcome=reason).observe(duration_seconds)

    def record_job_retried(self, queue: str) -> None:
        self.jobs_retried.labels(queue=queue).inc()

    def record_job_dead_lettered(self, queue: str) -> None:
        self.jobs_dead_lettered.labels(queue=queue).inc()

    def record_leases_reclaimed(self, count: int) -> None:
        """Record reclaimed leases."""
        if count > 0:
            self.leases_reclaimed.inc(count)

    def update_queue_gauges(self, queue: str, pending: int, active: int) -> None:
        """Update pending and active gauges for a queue."""
        self.jobs_pending.labels(queue=queue).set(pending)
        self.jobs_active.labels(queue=queue).set(active)

    def worker_started(self) -> None:
        self.active_workers.inc()

    def worker_stopped(self) -> None:
        self.active_workers.dec()

    def set_leader(self, identity: str, is_leader: bool) -> None:
        self.scheduler_is_leader.labels(identity=identity).set(1 if is_leader else 0)

    def record_scheduled_fired(self, definition: str) -> None:
        self.scheduled_fired.labels(definition=definition).inc()

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
    """Get the process-wide metrics collector, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
