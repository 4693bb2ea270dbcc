"""
Unit tests for logging, metrics and tracing helpers.
"""

import logging

import structlog
from prometheus_client import CollectorRegistry

from jobqueue.config import Settings
from jobqueue.observability.logging import bind_context, clear_context, setup_logging, unbind_context
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.observability.tracing import start_span


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_counters_and_gauges(self):
        metrics = MetricsCollector(registry=CollectorRegistry())

        metrics.record_job_failed("default", "timeout", 1.5)
        metrics.record_job_retried("default")
        metrics.update_queue_gauges("default", pending=4, active=2)
        metrics.record_leases_reclaimed(0)

        registry = metrics.registry
        assert registry.get_sample_value("jobs_failed_total", {"queue": "default", "reason": "timeout"}) == 1.0
        assert registry.get_sample_value("jobs_retried_total", {"queue": "default"}) == 1.0
        assert registry.get_sample_value("jobs_pending", {"queue": "default"}) == 4.0
        assert registry.get_sample_value("jobs_active", {"queue": "default"}) == 2.0
        assert registry.get_sample_value("leases_reclaimed_total") == 0.0

    def test_exposition(self):
        metrics = MetricsCollector(registry=CollectorRegistry())
        metrics.record_api_request("GET", "/jobs", 200, 0.01)

        body = metrics.get_metrics().decode()

        assert "api_requests_total" in body
        assert metrics.registry.get_sample_value(
            "api_requests_total",
            {"method": "GET", "endpoint": "/jobs", "status": "200"},
        ) == 1.0
        assert metrics.get_content_type().startswith("text/plain")


class TestLoggingContext:
    """Tests for structured logging context helpers."""

    def teardown_method(self):
        clear_context()

    def test_bind_and_unbind(self):
        bind_context(worker_id="w-1", job_id="j-1")
        assert structlog.contextvars.get_contextvars() == {"worker_id": "w-1", "job_id": "j-1"}

        unbind_context("job_id")
        assert structlog.contextvars.get_contextvars() == {"worker_id": "w-1"}

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_setup_logging_binds_process(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            setup_logging(Settings(log_level="WARNING", log_format="json"), process="worker")

            assert root.level == logging.WARNING
            assert structlog.contextvars.get_contextvars()["process"] == "worker"
        finally:
            root.handlers, root.level = handlers, level


class TestTracing:
    """Tests for span helpers."""

    def test_start_span_without_provider(self):
        """Spans can always be opened, even before tracing is configured."""
        with start_span("unit_test", job_id="abc", attempt=None) as span:
            assert span is not None
