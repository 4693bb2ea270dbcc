"""
Dashboard routes.
"""

from fastapi import APIRouter, Depends, Query

from jobqueue.api.dependencies import get_status_service
from jobqueue.status import StatusService
from jobqueue.types.api import ActivityResponse, DashboardResponse

router = APIRouter(tags=["Dashboard"])


@router.get(
    "/dashboard",
    response_model=DashboardResponse,
    summary="Aggregate counters",
    description="Job totals by state and activity over the last hour.",
)
async def dashboard(
    status_service: StatusService = Depends(get_status_service),
) -> DashboardResponse:
    return await status_service.dashboard()


@router.get(
    "/dashboard/activity",
    response_model=ActivityResponse,
    summary="Recent activity",
    description="Most recently finished attempts, newest first.",
)
async def recent_activity(
    limit: int = Query(default=20, ge=1, le=100),
    queue: str | None = Query(default=None, description="Filter by queue"),
    status_service: StatusService = Depends(get_status_service),
) -> ActivityResponse:
    return ActivityResponse(activity=await status_service.recent_activity(limit=limit, queue=queue))
