import logging
from fastapi import APIRouter, Depends, HTTPException, status

from research_app.dependencies import get_queue, get_existing_job
from research_app.exceptions import ValidationError, StorageError, QueueUnavailableError
from research_app.models.job import ResearchJob, JobStatus
from research_app.models.report import Report
from research_app.models.schemas import ResearchRequest, ResearchResponse, CancelResponse
from research_app.services.queue import ResearchQueue

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/research", response_model=ResearchResponse, status_code=status.HTTP_202_ACCEPTED, summary="Start a research job")
async def start_research(request: ResearchRequest, queue: ResearchQueue = Depends(get_queue)):
    """
    Validates the query and template, then queues a research job that searches,
    crawls, analyzes, and synthesizes a report in the background.
    """
    logger.info(f"Received research request for template '{request.template_id}'.")
    try:
        job = await queue.submit(request.query, request.template_id, request.options)
    except ValidationError as e:
        logger.info(f"Rejected research request: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageError as e:
        logger.error(f"Could not store research job: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Job store unavailable: {e}"
        )
    except QueueUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Research queue unavailable: {e}"
        )

    return ResearchResponse(
        id=job.id,
        status=job.status,
        progress=job.progress,
        message="Research job queued. Check status using GET /status/{job_id}"
    )


@router.get("/research/{job_id}", response_model=ResearchJob, summary="Get a research job")
async def get_research(job: ResearchJob = Depends(get_existing_job)):
    return job


@router.get("/research/{job_id}/report", response_model=Report, summary="Get the report of a completed job")
async def get_report(job: ResearchJob = Depends(get_existing_job)):
    if job.status != JobStatus.COMPLETED or job.report is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job '{job.id}' is {job.status.value}; the report is only available once it is completed."
        )
    return job.report


@router.delete("/research/{job_id}", response_model=CancelResponse, summary="Cancel a research job")
async def cancel_research(job: ResearchJob = Depends(get_existing_job), queue: ResearchQueue = Depends(get_queue)):
    """
    Requests cancellation. Waiting jobs fail immediately; running jobs stop at the
    next phase boundary.
    """
    try:
        cancelled = await queue.request_cancel(job.id)
    except StorageError as e:
        logger.error(f"Could not cancel job {job.id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Job store unavailable: {e}")
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job '{job.id}' is {job.status.value} and can no longer be cancelled."
        )
    return CancelResponse(id=job.id, cancelled=True, message="Cancellation requested.")
