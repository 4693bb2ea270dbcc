"""
Queue overview routes.
"""

from fastapi import APIRouter, Depends, Query

from jobqueue.api.dependencies import get_queue_store, get_status_service
from jobqueue.api.routes.jobs import paginate
from jobqueue.constants import JobState, ThroughputPeriod
from jobqueue.db import QueueStore
from jobqueue.status import StatusService
from jobqueue.types.api import (
    JobListResponse,
    QueueListResponse,
    QueueStatsResponse,
    ThroughputResponse,
)

router = APIRouter(prefix="/queues", tags=["Queues"])


@router.get(
    "",
    response_model=QueueListResponse,
    summary="List queues",
    description="List queues with pending, delayed, in-flight and dead-lettered counts.",
)
async def list_queues(
    status_service: StatusService = Depends(get_status_service),
) -> QueueListResponse:
    return QueueListResponse(queues=await status_service.list_queues())


@router.get(
    "/{name}/stats",
    response_model=QueueStatsResponse,
    summary="Queue statistics",
    description="Per-priority breakdown of one queue.",
)
async def queue_stats(
    name: str,
    status_service: StatusService = Depends(get_status_service),
) -> QueueStatsResponse:
    return await status_service.queue_stats(name)


@router.get(
    "/{name}/jobs",
    response_model=JobListResponse,
    summary="List jobs in a queue",
)
async def list_queue_jobs(
    name: str,
    state: JobState | None = Query(default=None, description="Filter by state"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    store: QueueStore = Depends(get_queue_store),
) -> JobListResponse:
    jobs, total = await store.list_jobs(
        queue=name,
        state=state,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return paginate(jobs, total, page, page_size)


@router.get(
    "/{name}/throughput",
    response_model=ThroughputResponse,
    summary="Queue throughput",
    description="Completed and failed jobs per time bucket over the chosen period.",
)
async def queue_throughput(
    name: str,
    period: ThroughputPeriod = Query(default=ThroughputPeriod.LAST_HOUR),
    status_service: StatusService = Depends(get_status_service),
) -> ThroughputResponse:
    return await status_service.throughput(name, period)
