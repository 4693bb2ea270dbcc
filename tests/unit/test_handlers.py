"""
Unit tests for job handlers.
"""

import json
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from jobqueue.constants import PAYLOAD_TYPE_BYTES, PAYLOAD_TYPE_JSON, PAYLOAD_TYPE_TEXT
from jobqueue.retry import RetryPolicy
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.handlers import (
    HandlerRegistry,
    get_default_registry,
    handle_echo,
    handle_failing_job,
    handle_http_request,
    handle_sleep,
    normalize_result,
)


def make_context(payload_type: str = PAYLOAD_TYPE_JSON, attempt: int = 1) -> JobContext:
    return JobContext(
        job_id=uuid4(),
        queue="default",
        handler="echo",
        attempt=attempt,
        max_attempts=3,
        payload_type=payload_type,
        lease_owner="test-worker/0",
        lease_expires_at=datetime(2024, 1, 1, 12, 0, 0) + timedelta(seconds=30),
    )


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_default_registry_has_builtins(self):
        """Built-in handlers register themselves on import."""
        names = get_default_registry().names()

        assert "echo" in names
        assert "sleep" in names
        assert "failing_job" in names
        assert "http_request" in names

    def test_register_directly(self):
        registry = HandlerRegistry()
        registry.register("echo", handle_echo)

        registration = registry.get("echo")

        assert registration is not None
        assert registration.func is handle_echo
        assert registration.retry_policy is None
        assert "echo" in registry
        assert len(registry) == 1

    def test_register_as_decorator_with_defaults(self):
        """Registration defaults are kept alongside the function."""
        registry = HandlerRegistry()
        policy = RetryPolicy.fixed(max_attempts=7, delay_seconds=2)

        @registry.register("resize", retry_policy=policy, timeout_seconds=12)
        async def resize(payload: bytes, context: JobContext) -> JobResult:
            return JobResult(success=True)

        registration = registry.get("resize")

        assert registration.func is resize
        assert registration.retry_policy == policy
        assert registration.timeout_seconds == 12

    def test_get_unknown_handler(self):
        registry = HandlerRegistry()

        assert registry.get("nonexistent") is None
        assert "nonexistent" not in registry

    def test_unregister(self):
        registry = HandlerRegistry()
        registry.register("echo", handle_echo)

        assert registry.unregister("echo") is True
        assert registry.unregister("echo") is False
        assert registry.get("echo") is None


class TestNormalizeResult:
    """Tests for normalize_result()."""

    def test_job_result_passes_through(self):
        result = JobResult(success=False, error="boom", retryable=False)

        assert normalize_result(result) is result

    def test_none_is_success(self):
        result = normalize_result(None)

        assert result.success is True
        assert result.output is None

    def test_dict_becomes_output(self):
        result = normalize_result({"rows": 3})

        assert result.success is True
        assert result.output == {"rows": 3}

    def test_scalar_is_wrapped(self):
        assert normalize_result(42).output == {"value": 42}


class TestBuiltinHandlers:
    """Tests for the built-in handlers."""

    @pytest.mark.asyncio
    async def test_echo_handler_json(self):
        """Test the echo handler with a JSON payload."""
        payload = json.dumps({"message": "test"}).encode()

        result = await handle_echo(payload, make_context())

        assert result.success is True
        assert result.output == {"echo": {"message": "test"}}

    @pytest.mark.asyncio
    async def test_echo_handler_text(self):
        result = await handle_echo(b"hello", make_context(PAYLOAD_TYPE_TEXT))

        assert result.output == {"echo": "hello"}

    @pytest.mark.asyncio
    async def test_failing_handler(self):
        """Test the failing handler reports the attempt number."""
        result = await handle_failing_job(b"{}", make_context(attempt=2))

        assert result.success is False
        assert "Intentional failure on attempt 2" in result.error
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_sleep_handler(self):
        payload = json.dumps({"duration_seconds": 0.01}).encode()

        result = await handle_sleep(payload, make_context())

        assert result.success is True
        assert result.output == {"slept_for": 0.01}

    def test_binary_payload_is_not_decoded(self):
        """Octet-stream payloads reach handlers as raw bytes."""
        context = make_context(PAYLOAD_TYPE_BYTES)

        assert context.decode(b"\x00\x01") == b"\x00\x01"

    @pytest.mark.asyncio
    async def test_http_request_requires_url(self):
        """A missing url is a permanent failure."""
        result = await handle_http_request(b"{}", make_context())

        assert result.success is False
        assert result.retryable is False
        assert "url" in result.error


class TestJobContext:
    """Tests for JobContext helpers."""

    def test_attempt_bookkeeping(self):
        context = make_context(attempt=2)

        assert context.remaining_attempts == 1
        assert context.is_last_attempt is False
        assert make_context(attempt=3).is_last_attempt is True
