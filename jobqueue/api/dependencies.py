"""
FastAPI dependencies shared by the routers.
"""

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config import get_settings
from jobqueue.db import QueueStore, get_async_session, get_session_factory
from jobqueue.producer import Producer
from jobqueue.scheduler.main import Scheduler
from jobqueue.status import StatusService
from jobqueue.worker.handlers import get_default_registry


def get_queue_store() -> QueueStore:
    """Queue store bound to the application's session factory."""
    return QueueStore.from_settings(get_session_factory(), get_settings())


def get_producer(store: QueueStore = Depends(get_queue_store)) -> Producer:
    """Producer that validates handler names against the loaded handler modules."""
    return Producer(store, registry=get_default_registry(), settings=get_settings())


def get_status_service(
    session: AsyncSession = Depends(get_async_session),
    store: QueueStore = Depends(get_queue_store),
) -> StatusService:
    return StatusService(session, store.clock)


def get_scheduler(request: Request) -> Scheduler:
    """
    The scheduler attached to the application.

    Raises:
        HTTPException: 503 if this API instance has no scheduler.
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No scheduler attached to this API instance",
        )
    return scheduler
