"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from jobqueue.config import Settings
from jobqueue.db.connection import get_async_session, make_session_factory
from jobqueue.db.models import Base
from jobqueue.db.store import QueueStore
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.producer import Producer
from jobqueue.worker.handlers import (
    HandlerRegistry,
    handle_echo,
    handle_failing_job,
    handle_sleep,
)

# In-memory SQLite by default; point at PostgreSQL to exercise row locking
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        log_level="DEBUG",
        log_format="console",
        worker_queues=["default"],
        worker_concurrency=2,
        worker_lease_duration_seconds=30,
        worker_poll_interval_seconds=0.01,
        worker_max_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0.05,
        worker_shutdown_timeout_seconds=1,
        reaper_interval_seconds=0.05,
        default_max_attempts=3,
        default_job_timeout_seconds=5,
        retry_base_delay_seconds=5,
        retry_jitter=0.1,
        store_retry_attempts=2,
        store_retry_base_delay_seconds=0.01,
        scheduler_tick_interval_seconds=0.05,
        scheduler_leader_ttl_seconds=15,
    )


@pytest_asyncio.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with a fresh schema."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            pool_reset_on_return=None,
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL, pool_pre_ping=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on an isolated registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> QueueStore:
    return QueueStore(session_factory, clock=clock, retry_attempts=2, retry_base_delay=0.01)


@pytest.fixture
def registry() -> HandlerRegistry:
    """Fresh handler registry with the test handlers."""
    registry = HandlerRegistry()
    registry.register("echo", handle_echo)
    registry.register("failing_job", handle_failing_job)
    registry.register("sleep", handle_sleep)
    return registry


@pytest.fixture
def producer(
    store: QueueStore,
    registry: HandlerRegistry,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> Producer:
    return Producer(store, registry=registry, settings=test_settings, metrics=metrics)


@pytest_asyncio.fixture
async def app(
    session_factory: async_sessionmaker[AsyncSession],
    store: QueueStore,
) -> AsyncGenerator[FastAPI]:
    """Create a FastAPI app wired to the test database."""
    from jobqueue.api.dependencies import get_queue_store
    from jobqueue.api.main import create_app

    async def override_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app()
    app.dependency_overrides[get_async_session] = override_session
    app.dependency_overrides[get_queue_store] = lambda: store

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_job_spec() -> dict[str, Any]:
    """Create a sample job spec."""
    return {
        "handler": "echo",
        "queue": "default",
        "payload": {"message": "Hello, World!"},
    }
