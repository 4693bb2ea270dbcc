"""
Job management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from jobqueue.api.dependencies import get_producer, get_queue_store
from jobqueue.constants import JobState
from jobqueue.db import QueueStore
from jobqueue.producer import Producer
from jobqueue.types.api import (
    AttemptResponse,
    CreateJobRequest,
    CreateJobResponse,
    JobListResponse,
    JobResponse,
    RetryJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])

# States a job can be manually retried from
RETRYABLE_STATES = (JobState.DEAD_LETTERED, JobState.CANCELLED)


def paginate(jobs, total: int, page: int, page_size: int) -> JobListResponse:
    """Build a JobListResponse from one page of jobs."""
    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=page * page_size < total,
    )


@router.post(
    "",
    response_model=CreateJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Enqueue a new job. A live job with the same dedup key is returned instead (200).",
)
async def create_job(
    request: CreateJobRequest,
    response: Response,
    producer: Producer = Depends(get_producer),
) -> CreateJobResponse:
    """
    Enqueue a new job.

    Args:
        request: Job creation request.
        response: Outgoing response, downgraded to 200 on deduplication.
        producer: Job producer.

    Returns:
        CreateJobResponse with the job id.
    """
    spec = request.model_dump(exclude={"scheduled_at"}, exclude_none=True)
    result = await producer.enqueue(spec, scheduled_at=request.scheduled_at)

    if not result.created:
        response.status_code = status.HTTP_200_OK
        return CreateJobResponse(
            id=result.job_id,
            created=False,
            message="Job already exists (deduplicated)",
        )

    return CreateJobResponse(id=result.job_id, created=True)


@router.get(
    "",
    response_model=JobListResponse,
    summary="Search jobs",
    description="List jobs with optional filters and pagination.",
)
async def list_jobs(
    queue: str | None = Query(default=None, description="Filter by queue"),
    state: JobState | None = Query(default=None, description="Filter by state"),
    handler: str | None = Query(default=None, description="Filter by handler"),
    correlation_id: str | None = Query(default=None, description="Filter by correlation id"),
    tag: str | None = Query(default=None, description="Only jobs carrying this tag"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    store: QueueStore = Depends(get_queue_store),
) -> JobListResponse:
    jobs, total = await store.list_jobs(
        queue=queue,
        state=state,
        handler=handler,
        correlation_id=correlation_id,
        tag=tag,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return paginate(jobs, total, page, page_size)


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: UUID,
    store: QueueStore = Depends(get_queue_store),
) -> JobResponse:
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )
    return JobResponse.from_job(job)


@router.get(
    "/{job_id}/attempts",
    response_model=list[AttemptResponse],
    summary="Get attempt history",
    description="List every recorded execution attempt of a job.",
)
async def get_job_attempts(
    job_id: UUID,
    store: QueueStore = Depends(get_queue_store),
) -> list[AttemptResponse]:
    if await store.get_job(job_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )
    attempts = await store.get_attempts(job_id)
    return [AttemptResponse.model_validate(attempt) for attempt in attempts]


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Cancel a job",
    description=(
        "Cancel a pending or delayed job. A leased job is only marked for "
        "cancellation and the call returns 409."
    ),
)
async def cancel_job(
    job_id: UUID,
    store: QueueStore = Depends(get_queue_store),
) -> Response:
    await store.cancel(job_id)
    logger.info("Job cancelled via API", extra={"job_id": str(job_id)})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{job_id}/retry",
    response_model=RetryJobResponse,
    summary="Retry a job",
    description="Requeue a dead-lettered or cancelled job with its attempt counter reset.",
)
async def retry_job(
    job_id: UUID,
    store: QueueStore = Depends(get_queue_store),
) -> RetryJobResponse:
    job = await store.retry_job(job_id, from_states=RETRYABLE_STATES)
    logger.info("Job retried via API", extra={"job_id": str(job_id)})
    return RetryJobResponse(id=job.id, state=job.state, attempts=job.attempts)
