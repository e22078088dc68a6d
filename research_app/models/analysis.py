"""
Strict response schemas for the Text Analyzer capability.

Analyzer implementations parse model output into these models; anything that does
not validate is surfaced as an AnalyzerError instead of being defaulted.
"""
from typing import List, Optional
from pydantic import BaseModel, Field

from research_app.models.report import ReportSection


class RelevanceAssessment(BaseModel):
    relevant: bool
    score: float = Field(..., ge=0.0, le=1.0)
    reason: str = ""


class AnalyzedPerson(BaseModel):
    name: str = Field(..., min_length=1)
    role: Optional[str] = None


class AnalyzedCompany(BaseModel):
    name: str = Field(..., min_length=1)
    industry: Optional[str] = None


class AnalyzedProduct(BaseModel):
    name: str = Field(..., min_length=1)
    type: Optional[str] = None


class AnalyzerEntities(BaseModel):
    people: List[AnalyzedPerson] = []
    companies: List[AnalyzedCompany] = []
    products: List[AnalyzedProduct] = []


class ReportDraft(BaseModel):
    """The structured part of a report as returned by the synthesis call."""
    title: Optional[str] = None
    summary: str = ""
    sections: List[ReportSection] = Field(..., min_length=1)
