"""
Worker registry routes.
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from jobqueue.api.dependencies import get_status_service
from jobqueue.config import get_settings
from jobqueue.constants import WorkerStatus
from jobqueue.status import StatusService
from jobqueue.types.api import WorkerListResponse

router = APIRouter(prefix="/workers", tags=["Workers"])


@router.get(
    "",
    response_model=WorkerListResponse,
    summary="List workers",
    description="Registered worker pools with heartbeat age and counters.",
)
async def list_workers(
    queue: str | None = Query(default=None, description="Only workers servicing this queue"),
    status_service: StatusService = Depends(get_status_service),
) -> WorkerListResponse:
    stale_after = timedelta(seconds=get_settings().worker_stale_after_seconds)
    workers = await status_service.worker_health(queue=queue, stale_after=stale_after)
    return WorkerListResponse(
        workers=workers,
        active=sum(1 for worker in workers if worker.status == WorkerStatus.ACTIVE),
    )
