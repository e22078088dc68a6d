import uuid
from enum import Enum
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime, timezone
from pydantic import BaseModel, Field, model_validator

from research_app.models.report import Report, SourceRef


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    CRAWLING = "crawling"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward order of the pipeline; FAILED sits outside it and is reachable from any non-terminal state.
STATUS_ORDER: List[JobStatus] = [
    JobStatus.PENDING,
    JobStatus.SEARCHING,
    JobStatus.CRAWLING,
    JobStatus.ANALYZING,
    JobStatus.GENERATING,
    JobStatus.COMPLETED,
]

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Progress band owned by each phase.
PHASE_PROGRESS: Dict[JobStatus, Tuple[int, int]] = {
    JobStatus.SEARCHING: (0, 30),
    JobStatus.CRAWLING: (30, 60),
    JobStatus.ANALYZING: (60, 85),
    JobStatus.GENERATING: (85, 100),
}


class Depth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"


DEFAULT_MAX_SOURCES: Dict[Depth, int] = {
    Depth.QUICK: 5,
    Depth.STANDARD: 10,
    Depth.DEEP: 20,
}


class ResearchOptions(BaseModel):
    """
    Per-job tuning. max_sources falls back to the depth default when unset.
    """
    depth: Depth = Depth.STANDARD
    max_sources: Optional[int] = Field(None, ge=1, le=50)
    include_recent: bool = False

    @model_validator(mode="after")
    def _default_max_sources(self) -> "ResearchOptions":
        if self.max_sources is None:
            self.max_sources = DEFAULT_MAX_SOURCES[self.depth]
        return self


class SourcesSummary(BaseModel):
    searched: int = 0
    crawled: int = 0
    relevant: int = 0
    urls: List[SourceRef] = []


class InvalidTransitionError(ValueError):
    """Raised when a job is asked to move backwards or out of a terminal state."""


class ResearchJob(BaseModel):
    """
    Represents a research job, tracking its state and progress.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    query: str = Field(..., min_length=1)
    template_id: str
    options: ResearchOptions = Field(default_factory=ResearchOptions)
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    cancel_requested: bool = False
    error: Optional[str] = None # Stable reason code, e.g. "cancelled"
    error_message: Optional[str] = None # Human-readable detail
    attempts: int = 0
    sources: SourcesSummary = Field(default_factory=SourcesSummary)
    analysis: Dict[str, Any] = {}
    report: Optional[Report] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_heartbeat: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, status: JobStatus):
        """Moves the job forward. Skipping ahead is allowed by the order, going back is not."""
        if self.is_terminal:
            raise InvalidTransitionError(f"Job {self.id} is already {self.status.value}.")
        if status == JobStatus.FAILED:
            self.status = status
            return
        if STATUS_ORDER.index(status) <= STATUS_ORDER.index(self.status):
            raise InvalidTransitionError(
                f"Job {self.id} cannot move from {self.status.value} to {status.value}."
            )
        self.status = status

    def advance_progress(self, value: int):
        """Raises progress to value; never lowers it."""
        self.progress = max(self.progress, min(100, int(value)))

    def mark_failed(self, reason: str, message: str):
        self.transition_to(JobStatus.FAILED)
        self.error = reason
        self.error_message = message
        self.report = None
        self.completed_at = utcnow()

    def mark_completed(self, report: Report):
        self.transition_to(JobStatus.COMPLETED)
        self.report = report
        self.progress = 100
        self.completed_at = utcnow()

    def reset_for_retry(self):
        """
        Puts a job that failed transiently back to PENDING for another attempt.
        Progress keeps its high-water mark; intermediate results are discarded.
        """
        if self.is_terminal:
            raise InvalidTransitionError(f"Job {self.id} is already {self.status.value}.")
        self.status = JobStatus.PENDING
        self.sources = SourcesSummary()
        self.analysis = {}
