"""
Dependencies for FastAPI endpoints
"""
from fastapi import HTTPException, Depends, Request, status

from research_app.models.job import ResearchJob
from research_app.services.queue import ResearchQueue
from research_app.services.templates import TemplateRegistry
from research_app.exceptions import StorageError


def get_queue(request: Request) -> ResearchQueue:
    """Returns the queue built by the application lifespan."""
    return request.app.state.queue


def get_templates(request: Request) -> TemplateRegistry:
    return request.app.state.templates


async def get_existing_job(job_id: str, queue: ResearchQueue = Depends(get_queue)) -> ResearchJob:
    """
    Loads a job or raises 404. Store outages are reported as 503.
    """
    try:
        job = await queue.get_job(job_id)
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Job store unavailable: {e}"
        )
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job with ID '{job_id}' not found."
        )
    return job
