import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from redis.exceptions import RedisError
from sse_starlette.sse import EventSourceResponse

from research_app.dependencies import get_queue, get_existing_job
from research_app.exceptions import StorageError
from research_app.models.job import ResearchJob, TERMINAL_STATUSES
from research_app.models.schemas import JobStatusResponse, QueueStatsResponse
from research_app.services.events import status_snapshot
from research_app.services.queue import ResearchQueue

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/status/{job_id}", response_model=JobStatusResponse, summary="Get research job status")
async def get_job_status(job: ResearchJob = Depends(get_existing_job)):
    """
    Retrieves the current status, progress and failure reason of a research job.
    """
    logger.info(f"Retrieved status for job {job.id}: {job.status.value} ({job.progress}%)")
    return status_snapshot(job)


@router.get("/research/{job_id}/stream", summary="Stream research job status as server-sent events")
async def stream_job_status(job_id: str, request: Request, queue: ResearchQueue = Depends(get_queue)):
    """
    Emits a `status` event for the current state and for every later status or
    progress change. The stream ends after the job completes or fails.
    """
    try:
        subscription = await queue.broadcaster.subscribe(job_id)
    except RedisError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Status channel unavailable: {e}")
    try:
        job = await queue.get_job(job_id)
    except StorageError as e:
        await subscription.close()
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Job store unavailable: {e}")
    if job is None:
        await subscription.close()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job with ID '{job_id}' not found.")

    initial = status_snapshot(job)

    async def event_generator():
        last_progress = initial.progress
        async with subscription:
            yield {"event": "status", "data": initial.model_dump_json()}
            if initial.status in TERMINAL_STATUSES:
                return
            async for snapshot in subscription:
                if await request.is_disconnected():
                    logger.debug(f"Job {job_id}: stream client disconnected.")
                    return
                # Snapshots published before the initial read are already covered by it.
                if snapshot.progress < last_progress:
                    continue
                last_progress = snapshot.progress
                yield {"event": "status", "data": snapshot.model_dump_json()}

    return EventSourceResponse(event_generator())


@router.get("/health/jobs", response_model=QueueStatsResponse, summary="Queue statistics and stalled jobs")
async def get_queue_health(queue: ResearchQueue = Depends(get_queue)):
    """
    Returns waiting/active/completed/failed counts plus the running jobs that have
    not heartbeated within the watchdog threshold and are candidates for being
    marked failed.
    """
    try:
        stats = await queue.stats()
        stuck_jobs = await queue.stuck_jobs()
    except StorageError as e:
        logger.error(f"Error retrieving queue health: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"An error occurred while retrieving queue health: {e}"
        )
    stats.stuck = [status_snapshot(job) for job in stuck_jobs]
    return stats
