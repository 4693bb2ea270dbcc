"""
Dead-letter inspection and recovery routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from jobqueue.api.dependencies import get_queue_store
from jobqueue.api.routes.jobs import paginate
from jobqueue.constants import JobState
from jobqueue.db import QueueStore
from jobqueue.types.api import (
    AttemptResponse,
    DeadLetterResponse,
    JobListResponse,
    JobResponse,
    RetryJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dlq", tags=["Dead Letter Queue"])


@router.get(
    "",
    response_model=JobListResponse,
    summary="List dead-lettered jobs",
)
async def list_dead_lettered(
    queue: str | None = Query(default=None, description="Filter by queue"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    store: QueueStore = Depends(get_queue_store),
) -> JobListResponse:
    jobs, total = await store.list_dead_lettered(
        queue=queue,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return paginate(jobs, total, page, page_size)


@router.get(
    "/{job_id}",
    response_model=DeadLetterResponse,
    summary="Inspect a dead-lettered job",
    description="Failure reason and full attempt history of a dead-lettered job.",
)
async def get_dead_lettered(
    job_id: UUID,
    store: QueueStore = Depends(get_queue_store),
) -> DeadLetterResponse:
    job = await store.get_job(job_id)
    if job is None or job.state != JobState.DEAD_LETTERED:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Dead-lettered job not found: {job_id}",
        )

    attempts = await store.get_attempts(job_id)
    return DeadLetterResponse(
        job=JobResponse.from_job(job),
        reason=job.dead_letter_reason,
        attempts=[AttemptResponse.model_validate(attempt) for attempt in attempts],
    )


@router.post(
    "/{job_id}/retry",
    response_model=RetryJobResponse,
    summary="Retry a dead-lettered job",
    description="Reset the attempt counter and move the job back to pending.",
)
async def retry_dead_lettered(
    job_id: UUID,
    store: QueueStore = Depends(get_queue_store),
) -> RetryJobResponse:
    job = await store.retry_job(job_id)
    logger.info("Dead-lettered job retried", extra={"job_id": str(job_id)})
    return RetryJobResponse(id=job.id, state=job.state, attempts=job.attempts)
