"""
FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jobqueue import __version__
from jobqueue.api.routes import (
    dashboard_router,
    dlq_router,
    health_router,
    jobs_router,
    queues_router,
    scheduled_router,
    workers_router,
)
from jobqueue.config import get_settings
from jobqueue.db import QueueStore, close_db, get_engine, get_session_factory, init_db
from jobqueue.errors import (
    DuplicateJob,
    InvalidJobState,
    JobQueueError,
    LeadershipLost,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from jobqueue.scheduler.definitions import load_definition_modules
from jobqueue.scheduler.main import Scheduler, build_scheduler
from jobqueue.types.api import ErrorResponse
from jobqueue.worker.handlers import load_handler_modules

logger = logging.getLogger(__name__)

# Error type -> HTTP status, most specific first
ERROR_STATUS: list[tuple[type[JobQueueError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidJobState, status.HTTP_409_CONFLICT),
    (DuplicateJob, status.HTTP_409_CONFLICT),
    (LeadershipLost, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings = get_settings()

    # Startup
    setup_logging(settings, process="api")
    setup_metrics()
    setup_tracing(settings)
    await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)

    # POST /jobs rejects handler names no loaded module registered
    load_handler_modules(settings.worker_handler_modules)

    if app.state.scheduler is None and settings.scheduler_definition_modules:
        # Listing, triggering and enable/disable only; ticking runs in the scheduler process
        load_definition_modules(settings.scheduler_definition_modules)
        app.state.scheduler = build_scheduler(
            QueueStore.from_settings(get_session_factory(), settings), settings
        )

    logger.info("Application started")

    yield

    # Shutdown
    await close_db()
    logger.info("Application shutdown")


async def handle_job_queue_error(request: Request, exc: JobQueueError) -> JSONResponse:
    """Translate job queue errors into JSON error responses."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"Request failed: {exc}", extra={"path": request.url.path})

    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=type(exc).__name__, detail=str(exc)).model_dump(),
    )


def create_app(scheduler: Scheduler | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        scheduler: Optional scheduler backing the /scheduled routes.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Queue API",
        description="Distributed background job queue with priorities, retries and scheduling",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.scheduler = scheduler

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_request_metrics(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        get_metrics().record_api_request(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status=response.status_code,
            duration_seconds=time.perf_counter() - started,
        )
        return response

    app.add_exception_handler(JobQueueError, handle_job_queue_error)

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(queues_router)
    app.include_router(dlq_router)
    app.include_router(dashboard_router)
    app.include_router(scheduled_router)
    app.include_router(workers_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
