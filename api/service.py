"""
Job submission and status API.

Thin HTTP layer over the job queue and the status store; workers never
talk to it. Run with: uvicorn api.service:app --host 0.0.0.0 --port 9005
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.job_queue import JobQueue
from api.models import QualityProfile, TranscodingJob, profiles_for_names
from api.redis_client import RedisClient, RedisUnavailableError
from api.schemas import (
    ErrorStatsResponse,
    HealthResponse,
    JobErrorsResponse,
    JobStatusResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    QualityProfileRequest,
    QueueCleanResponse,
    QueuePauseResponse,
    QueueStatsResponse,
)
from api.status_store import StatusStore
from config import QUEUE_CLEAN_COMPLETED_HOURS, QUEUE_CLEAN_FAILED_HOURS, REDIS_URL
from worker.errors import compute_error_statistics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage the Redis connection lifecycle."""
    redis = RedisClient(REDIS_URL)
    if not await redis.connect():
        # Requests get 503 until the circuit breaker lets Redis back in
        logger.warning("Redis unavailable at API startup")
    status_store = StatusStore(redis)
    app.state.redis = redis
    app.state.status_store = status_store
    app.state.queue = JobQueue(redis, status_store)
    logger.info("Job API started")

    yield

    await redis.close()
    logger.info("Job API shutdown complete")


app = FastAPI(
    title="vodforge Job API",
    description="Submit HLS transcoding jobs and query their status",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(RedisUnavailableError)
async def redis_unavailable_handler(request: Request, exc: RedisUnavailableError):
    logger.warning(f"{request.method} {request.url.path} failed, Redis unavailable: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Job store temporarily unavailable"})


def get_redis(request: Request) -> RedisClient:
    return request.app.state.redis


def get_status_store(request: Request) -> StatusStore:
    return request.app.state.status_store


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def resolve_requested_qualities(
    requested: Optional[List[Union[str, QualityProfileRequest]]],
) -> Optional[List[QualityProfile]]:
    """
    Turn the request's quality list into profiles.

    Raises:
        HTTPException 400: If a preset name is unknown
    """
    if requested is None:
        return None
    profiles = []
    for item in requested:
        if isinstance(item, str):
            try:
                profiles.extend(profiles_for_names([item]))
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e)) from None
        else:
            profiles.append(item.to_profile())
    return profiles


# =============================================================================
# Jobs
# =============================================================================


@app.post("/api/jobs", response_model=JobSubmitResponse, status_code=202)
async def submit_job(data: JobSubmitRequest, queue: JobQueue = Depends(get_queue)):
    """
    Submit a job.

    Resubmitting an existing job_id replaces its payload and resets its
    status to QUEUED; `enqueued` is False when a delivery was already pending.
    """
    job = TranscodingJob.create(
        input_path=data.input_path,
        output_path=data.output_path,
        qualities=resolve_requested_qualities(data.qualities),
        job_id=data.job_id,
        metadata=data.metadata,
    )
    enqueued = await queue.enqueue(job)
    return JobSubmitResponse(job_id=job.job_id, status="QUEUED", enqueued=enqueued)


@app.get("/api/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, status_store: StatusStore = Depends(get_status_store)):
    progress = await status_store.get(job_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(**progress.to_dict())


@app.get("/api/jobs/{job_id}/errors", response_model=JobErrorsResponse)
async def get_job_errors(job_id: str, status_store: StatusStore = Depends(get_status_store)):
    """Classified error history of a job, oldest first."""
    if await status_store.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    errors = await status_store.get_errors(job_id)
    return JobErrorsResponse(job_id=job_id, errors=[e.to_dict() for e in errors])


# =============================================================================
# Diagnostics
# =============================================================================


@app.get("/api/errors/stats", response_model=ErrorStatsResponse)
async def get_error_stats(
    hours: float = Query(default=24, gt=0, le=24 * 30),
    status_store: StatusStore = Depends(get_status_store),
):
    """Error counts by class and severity over the last `hours`, across all jobs."""
    errors = await status_store.get_recent_errors()
    stats = compute_error_statistics(errors, hours=hours)
    return ErrorStatsResponse(hours=hours, **stats)


@app.get("/api/queue/stats", response_model=QueueStatsResponse)
async def get_queue_stats(queue: JobQueue = Depends(get_queue)):
    return QueueStatsResponse(**await queue.get_queue_stats())


# =============================================================================
# Queue control
# =============================================================================


@app.post("/api/queue/pause", response_model=QueuePauseResponse)
async def pause_queue(queue: JobQueue = Depends(get_queue)):
    """Stop workers from claiming jobs. Running jobs finish; submissions are still accepted."""
    await queue.pause()
    return QueuePauseResponse(paused=True)


@app.post("/api/queue/resume", response_model=QueuePauseResponse)
async def resume_queue(queue: JobQueue = Depends(get_queue)):
    await queue.resume()
    return QueuePauseResponse(paused=False)


@app.post("/api/queue/clean", response_model=QueueCleanResponse)
async def clean_queue(
    completed_hours: float = Query(default=QUEUE_CLEAN_COMPLETED_HOURS, ge=0),
    failed_hours: float = Query(default=QUEUE_CLEAN_FAILED_HOURS, ge=0),
    queue: JobQueue = Depends(get_queue),
):
    """Trim acknowledged job messages and dead letters older than the given ages."""
    removed = await queue.clean(completed_hours=completed_hours, failed_hours=failed_hours)
    return QueueCleanResponse(**removed)


@app.get("/health", response_model=HealthResponse)
async def health_check(redis: RedisClient = Depends(get_redis)):
    """Returns 503 when Redis is unreachable."""
    redis_ok = await redis.health_check()
    body = HealthResponse(
        status="healthy" if redis_ok else "unhealthy",
        redis=redis_ok,
        timestamp=datetime.now(timezone.utc),
    )
    if not redis_ok:
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return body
