"""
Scheduled job routes.

Enable/disable writes the shared definition state, so the change reaches
every scheduler instance on its next tick.
"""

import logging

from fastapi import APIRouter, Depends

from jobqueue.api.dependencies import get_scheduler
from jobqueue.scheduler.main import Scheduler
from jobqueue.types.api import ScheduledListResponse, ScheduleInfo, TriggerResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduled", tags=["Scheduled Jobs"])


@router.get(
    "",
    response_model=ScheduledListResponse,
    summary="List scheduled jobs",
    description="Scheduled job definitions with their next firing times and the current leader.",
)
async def list_scheduled(
    scheduler: Scheduler = Depends(get_scheduler),
) -> ScheduledListResponse:
    return ScheduledListResponse(
        identity=scheduler.identity,
        is_leader=scheduler.is_leader,
        leader=await scheduler.leader(),
        definitions=await scheduler.list_definitions(),
    )


@router.post(
    "/{name}/trigger",
    response_model=TriggerResponse,
    summary="Fire a scheduled job now",
)
async def trigger_scheduled(
    name: str,
    scheduler: Scheduler = Depends(get_scheduler),
) -> TriggerResponse:
    result = await scheduler.trigger(name)
    logger.info("Scheduled job triggered via API", extra={"definition": name})
    return TriggerResponse(name=name, job_id=result.job_id, created=result.created)


@router.post(
    "/{name}/enable",
    response_model=ScheduleInfo,
    summary="Enable a scheduled job",
    description="Enable a definition fleet-wide. Firings missed while disabled are skipped.",
)
async def enable_scheduled(
    name: str,
    scheduler: Scheduler = Depends(get_scheduler),
) -> ScheduleInfo:
    return await scheduler.enable(name)


@router.post(
    "/{name}/disable",
    response_model=ScheduleInfo,
    summary="Disable a scheduled job",
    description="Disable a definition fleet-wide.",
)
async def disable_scheduled(
    name: str,
    scheduler: Scheduler = Depends(get_scheduler),
) -> ScheduleInfo:
    return await scheduler.disable(name)
