from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from research_app.models.job import JobStatus, ResearchOptions

# --- API Request/Response Schemas ---

class ResearchRequest(BaseModel):
    """
    Schema for the POST /research request body.
    """
    query: str = Field(
        ...,
        description="Free-text research query.",
        examples=["Acme Corp"]
    )
    template_id: str = Field(
        "company-profile",
        description="Identifier of the report template to use.",
        examples=["company-profile"]
    )
    options: ResearchOptions = Field(
        default_factory=ResearchOptions,
        description="Depth, source cap and recency preference for the job."
    )

class ResearchResponse(BaseModel):
    """
    Schema for the POST /research response body.
    """
    id: str = Field(..., description="Unique identifier for the research job.")
    status: JobStatus = Field(..., description="Status of the job at submission time.")
    progress: int = Field(0, description="Progress percentage at submission time.")
    message: str = Field(..., description="Status message for the job initiation.")

class JobStatusResponse(BaseModel):
    """
    Schema for the GET /status/{job_id} response body.
    """
    id: str = Field(..., description="Unique identifier for the research job.")
    status: JobStatus = Field(..., description="Current status of the job.")
    progress: int = Field(..., description="Progress percentage, 0-100.")
    error: Optional[str] = Field(None, description="Stable reason code, set only when the job failed.")
    error_message: Optional[str] = Field(None, description="Human-readable failure detail.")

class CancelResponse(BaseModel):
    """
    Schema for the DELETE /research/{job_id} response body.
    """
    id: str
    cancelled: bool
    message: str

class TemplateSummary(BaseModel):
    id: str
    name: str
    description: str
    sections: List[str]

class QueueStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    stuck: List[JobStatusResponse] = []

class HealthCheckResponse(BaseModel):
    """
    Schema for the GET /health response body.
    """
    status: str = Field("ok", description="Status of the API service.")
    timestamp: datetime = Field(..., description="Current server time.")
    version: str = Field(..., description="Application version.")
