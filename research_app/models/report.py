from typing import List
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field

class ReportSection(BaseModel):
    """
    A single titled section of a generated report.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    content: str

class SourceRef(BaseModel):
    """
    A cited source: the URL and the title it was crawled under.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    title: str = ""

class Report(BaseModel):
    """
    The synthesized report attached to a completed research job.
    Frozen: once attached to a job it is never edited.
    """
    model_config = ConfigDict(frozen=True)

    title: str
    summary: str = ""
    sections: List[ReportSection]
    sources: List[SourceRef] = []
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
