"""
Job handlers registry and implementations.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or network issues.

A handler is an async callable receiving the raw payload bytes and a
JobContext. It may return a JobResult, a dict (treated as successful
output) or None. Raising any exception counts as a failed attempt;
raising NonRetryableError sends the job straight to the dead-letter set.
"""

import asyncio
import importlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import httpx

from jobqueue.retry import RetryPolicy
from jobqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[bytes, JobContext], Awaitable[JobResult | dict[str, Any] | None]]


@dataclass
class HandlerRegistration:
    """A registered handler plus its per-handler job defaults."""

    name: str
    func: JobHandler
    retry_policy: RetryPolicy | None = None
    timeout_seconds: float | None = None


class HandlerRegistry:
    """Mapping from handler name to execution capability."""

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerRegistration] = {}

    def register(
        self,
        name: str,
        func: JobHandler | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
    ) -> Any:
        """
        Register a job handler, directly or as a decorator.

        Args:
            name: The handler name jobs refer to.
            func: The handler; omit to use as a decorator.
            retry_policy: Default retry policy for jobs using this handler.
            timeout_seconds: Default per-attempt timeout for jobs using this handler.

        Example:
            @registry.register("send_email", timeout_seconds=30)
            async def send_email(payload: bytes, context: JobContext) -> JobResult:
                ...
        """

        def decorator(handler: JobHandler) -> JobHandler:
            if name in self._handlers:
                logger.warning(f"Replacing handler: {name}")
            self._handlers[name] = HandlerRegistration(
                name=name,
                func=handler,
                retry_policy=retry_policy,
                timeout_seconds=timeout_seconds,
            )
            logger.debug(f"Registered handler: {name}")
            return handler

        if func is not None:
            return decorator(func)
        return decorator

    def unregister(self, name: str) -> bool:
        return self._handlers.pop(name, None) is not None

    def get(self, name: str) -> HandlerRegistration | None:
        """
        Get the registration for a handler name.

        Returns:
            The registration or None if not found.
        """
        return self._handlers.get(name)

    def names(self) -> list[str]:
        """List all registered handler names."""
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def normalize_result(value: JobResult | dict[str, Any] | None) -> JobResult:
    """Turn whatever a handler returned into a JobResult."""
    if isinstance(value, JobResult):
        return value
    if value is None:
        return JobResult(success=True)
    if isinstance(value, dict):
        return JobResult(success=True, output=value)
    return JobResult(success=True, output={"value": value})


# Process-wide registry populated by register_handler
default_registry = HandlerRegistry()


def register_handler(
    name: str,
    *,
    retry_policy: RetryPolicy | None = None,
    timeout_seconds: float | None = None,
) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator registering a handler on the default registry.

    Example:
        @register_handler("send_email")
        async def handle_send_email(payload: bytes, context: JobContext) -> JobResult:
            ...
    """
    return default_registry.register(
        name,
        retry_policy=retry_policy,
        timeout_seconds=timeout_seconds,
    )


def get_default_registry() -> HandlerRegistry:
    return default_registry


def load_handler_modules(modules: Iterable[str]) -> None:
    """Import modules whose import registers handlers on the default registry."""
    for module in modules:
        importlib.import_module(module)
        logger.info(f"Loaded handler module: {module}")


def _data(payload: bytes, context: JobContext) -> dict[str, Any]:
    decoded = context.decode(payload)
    return decoded if isinstance(decoded, dict) else {}


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(payload: bytes, context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the decoded payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )

    return JobResult(
        success=True,
        output={"echo": context.decode(payload)},
    )


@register_handler("sleep")
async def handle_sleep(payload: bytes, context: JobContext) -> JobResult:
    """
    Sleep handler for testing delays and timeouts.

    Payload should contain:
    - duration_seconds: How long to sleep
    """
    duration = float(_data(payload, context).get("duration_seconds", 1))

    logger.info(
        "Sleep job starting",
        extra={"job_id": str(context.job_id), "duration": duration},
    )

    await asyncio.sleep(duration)

    return JobResult(
        success=True,
        output={"slept_for": duration},
    )


@register_handler("failing_job")
async def handle_failing_job(payload: bytes, context: JobContext) -> JobResult:
    """
    Handler that always fails - for testing retry logic.
    """
    logger.info(
        "Failing job executing (will fail)",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )

    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )


@register_handler("http_request", timeout_seconds=60.0)
async def handle_http_request(payload: bytes, context: JobContext) -> JobResult:
    """
    Make an HTTP request.

    Payload should contain:
    - url: The URL to request
    - method: HTTP method (GET, POST, etc.)
    - headers: Optional headers
    - body: Optional JSON request body

    Client errors (4xx) are not retried; server errors and transport
    failures are.
    """
    data = _data(payload, context)
    url = data.get("url")
    method = str(data.get("method", "GET")).upper()
    headers = data.get("headers") or {}
    body = data.get("body")

    if not url:
        return JobResult(
            success=False,
            error="Missing 'url' in payload",
            retryable=False,
        )

    logger.info(
        "HTTP request job",
        extra={"job_id": str(context.job_id), "method": method, "url": url},
    )

    try:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=body if method in ("POST", "PUT", "PATCH") else None,
                timeout=30.0,
            )
    except httpx.HTTPError as e:
        return JobResult(
            success=False,
            error=f"HTTP request failed: {e}",
        )

    return JobResult(
        success=response.is_success,
        output={
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": response.text[:1000],  # Truncate response
        },
        error=None if response.is_success else f"HTTP {response.status_code}",
        retryable=not response.is_client_error,
    )
