from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

class SearchResult(BaseModel):
    """
    A single hit returned by a search provider.
    """
    title: str = ""
    url: str
    snippet: str = ""
    published_at: Optional[str] = None # Provider "age" string, e.g. "3 days ago" or an ISO timestamp

class AggregatedResult(SearchResult):
    """
    A deduplicated, scored search hit produced by the SearchAggregator.
    """
    source: str # Name of the provider the kept result came from
    relevance_score: float = 0.0

class CrawledPage(BaseModel):
    """
    Represents a single web page that has been fetched and extracted.
    """
    url: str
    title: str = ""
    content: str # Main text content, whitespace-collapsed
    metadata: Dict[str, Any] = {} # description, author, published date, open graph, ...

class RelevantPage(CrawledPage):
    """
    A crawled page annotated with the analyzer's relevance verdict.
    """
    relevant: bool
    score: float = Field(..., ge=0.0, le=1.0)
    reason: str = ""
