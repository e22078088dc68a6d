import pytest
from typing import Dict, List, Optional, Union

from research_app.core.search import SearchProvider, SearchAggregator
from research_app.exceptions import AnalyzerError, CrawlError
from research_app.models.analysis import RelevanceAssessment, AnalyzerEntities
from research_app.models.document import SearchResult, CrawledPage
from research_app.models.report import Report, ReportSection, SourceRef
from research_app.models.template import ReportTemplate, TemplateSection
from research_app.services.job_store import InMemoryJobStore
from research_app.services.templates import TemplateRegistry


class StaticSearchProvider(SearchProvider):
    """Search provider returning the same results for every query."""
    def __init__(self, results: List[SearchResult], name: str = "static", weight: float = 1.0):
        super().__init__(name, weight)
        self.results = results
        self.queries: List[str] = []

    async def search(self, query, count=10, freshness=None):
        self.queries.append(query)
        return list(self.results)


class FakeCrawler:
    """Serves pages from a dict of url -> content, or url -> CrawlError."""
    def __init__(self, pages: Dict[str, Union[str, CrawlError]], on_fetch=None):
        self.pages = pages
        self.on_fetch = on_fetch
        self.fetched: List[str] = []

    async def fetch_many(self, urls, job_id=None):
        for url in urls:
            self.fetched.append(url)
            if self.on_fetch is not None:
                self.on_fetch(url)
            outcome = self.pages.get(url, CrawlError(f"no page for {url}"))
            if isinstance(outcome, CrawlError):
                yield url, outcome
            else:
                yield url, CrawledPage(url=url, title=f"Title of {url}", content=outcome)


class FakeAnalyzer:
    """Scores pages from a url -> (relevant, score) table and writes a one-section report."""
    def __init__(self, scores: Optional[Dict[str, tuple]] = None, entities_error: bool = False):
        self.scores = scores or {}
        self.entities_error = entities_error
        self.assessed: List[str] = []
        self.report_sources: Optional[List[CrawledPage]] = None

    async def assess_relevance(self, content, query):
        self.assessed.append(content)
        for marker, (relevant, score) in self.scores.items():
            if marker in content:
                if score is None:
                    raise AnalyzerError("unparseable relevance output")
                return RelevanceAssessment(relevant=relevant, score=score, reason="scored")
        return RelevanceAssessment(relevant=False, score=0.0, reason="unknown page")

    async def extract_entities(self, text):
        if self.entities_error:
            raise AnalyzerError("entities response does not match schema")
        return AnalyzerEntities()

    async def generate_report(self, sources, template, query):
        self.report_sources = list(sources)
        return Report(
            title=f"{template.name}: {query}",
            summary=f"Summary of {len(sources)} sources.",
            sections=[ReportSection(id="overview", title="Overview", content="Findings.")],
            sources=[SourceRef(url=page.url, title=page.title) for page in sources],
        )


class RecordingJobStore(InMemoryJobStore):
    """In-memory store that keeps a history of (status, progress) writes and checkpoint phases."""
    def __init__(self):
        super().__init__()
        self.history = []
        self.checkpoint_phases = []

    async def update_job(self, job):
        self.history.append((job.status, job.progress))
        await super().update_job(job)

    async def persist_checkpoint(self, job_id, phase, state):
        self.checkpoint_phases.append(phase)
        await super().persist_checkpoint(job_id, phase, state)


def page_text(marker: str, length: int = 300) -> str:
    """Page content of exactly `length` characters starting with a marker word."""
    text = f"{marker} " + "lorem ipsum dolor sit amet " * (length // 10 + 1)
    return text[:length]


@pytest.fixture
def test_template():
    return ReportTemplate(
        id="test-profile",
        name="Test Profile",
        description="Template used in tests",
        sections=[TemplateSection(id="overview", title="Overview")],
        search_queries=["{query} overview", "{query} news"],
        analysis_prompt="Summarize what is known.",
    )


@pytest.fixture
def templates(test_template):
    return TemplateRegistry([test_template])


@pytest.fixture
def job_store():
    return RecordingJobStore()


@pytest.fixture
def make_aggregator():
    def _make(urls):
        results = [SearchResult(title=f"Result {i}", url=url, snippet="") for i, url in enumerate(urls)]
        return SearchAggregator([StaticSearchProvider(results)])
    return _make
