"""
The research pipeline: Search -> Crawl -> Analyze -> Generate.

Each phase runs sequentially for a job. The orchestrator checks the cancellation
token when entering a phase, persists the job after every progress update, and
saves a checkpoint at every phase boundary. Errors are raised to the caller (the
queue worker), which decides between retrying and failing the job.
"""
import asyncio
import logging
from typing import List, Optional, Dict, Any

from research_app.core.analyzer import TextAnalyzer
from research_app.core.crawler import WebCrawler
from research_app.core.entities import EntityExtractor
from research_app.core.search import SearchAggregator, normalize_url
from research_app.exceptions import AnalyzerError, ValidationError, NoSearchResultsError, StorageError
from research_app.models.analysis import AnalyzerEntities
from research_app.models.document import AggregatedResult, CrawledPage, RelevantPage
from research_app.models.job import ResearchJob, JobStatus, PHASE_PROGRESS
from research_app.models.report import Report, SourceRef
from research_app.models.template import ReportTemplate
from research_app.services.events import StatusBroadcaster
from research_app.services.job_store import JobStore
from research_app.services.queue import CancellationToken
from research_app.services.templates import TemplateRegistry

logger = logging.getLogger(__name__)

NO_RELEVANT_SOURCES = "no_relevant_sources"
MALFORMED_ENTITY_OUTPUT = "malformed_entity_output"
RECENT_FRESHNESS = "pm" # past month


def band_progress(status: JobStatus, done: int, total: int) -> int:
    """Progress after `done` of `total` steps of a phase, linear across its band."""
    low, high = PHASE_PROGRESS[status]
    if total <= 0:
        return high
    return low + int(done / total * (high - low))


class ResearchOrchestrator:
    """
    Drives one research job through the four pipeline phases.
    """
    def __init__(
        self,
        store: JobStore,
        templates: TemplateRegistry,
        aggregator: SearchAggregator,
        crawler: WebCrawler,
        analyzer: TextAnalyzer,
        entity_extractor: EntityExtractor,
        broadcaster: Optional[StatusBroadcaster] = None,
        results_per_query: int = 5,
        min_content_length: int = 100,
        relevance_threshold: float = 0.5,
    ):
        self.store = store
        self.templates = templates
        self.aggregator = aggregator
        self.crawler = crawler
        self.analyzer = analyzer
        self.entity_extractor = entity_extractor
        self.broadcaster = broadcaster
        self.results_per_query = results_per_query
        self.min_content_length = min_content_length
        self.relevance_threshold = relevance_threshold

    async def _save(self, job: ResearchJob):
        await self.store.update_job(job)
        if self.broadcaster is not None:
            await self.broadcaster.publish(job)

    async def _set_progress(self, job: ResearchJob, value: int):
        job.advance_progress(value)
        await self._save(job)

    async def _enter_phase(self, job: ResearchJob, status: JobStatus, cancel_token: CancellationToken):
        await cancel_token.raise_if_cancelled(job)
        job.transition_to(status)
        job.advance_progress(PHASE_PROGRESS[status][0])
        await self._save(job)
        logger.info(f"Job {job.id}: entered {status.value} at {job.progress}%")

    async def run(self, job: ResearchJob, cancel_token: CancellationToken) -> ResearchJob:
        """
        Runs all phases and leaves the job Completed with a report attached.
        """
        template = self.templates.get(job.template_id)
        if template is None:
            raise ValidationError(f"Unknown template '{job.template_id}'")

        previous = await self.store.load_checkpoint(job.id)
        if previous:
            logger.info(f"Job {job.id}: discarding checkpoints {sorted(previous)} from an earlier attempt.")
            await self.store.clear_checkpoint(job.id)

        results = await self.search_phase(job, template, cancel_token)
        pages = await self.crawl_phase(job, results, cancel_token)
        relevant = await self.analyze_phase(job, pages, cancel_token)
        await self.generate_phase(job, template, relevant, cancel_token)
        return job

    # --- Phase 1: Search (0-30%) ---

    async def search_phase(self, job: ResearchJob, template: ReportTemplate, cancel_token: CancellationToken) -> List[AggregatedResult]:
        await self._enter_phase(job, JobStatus.SEARCHING, cancel_token)

        queries = template.render_search_queries(job.query)
        freshness = RECENT_FRESHNESS if job.options.include_recent else None
        best: Dict[str, AggregatedResult] = {}

        for i, query in enumerate(queries):
            results = await self.aggregator.search(query, self.results_per_query, freshness)
            for result in results:
                key = normalize_url(result.url)
                if key not in best or result.relevance_score > best[key].relevance_score:
                    best[key] = result
            logger.info(f"Job {job.id}: query {i + 1}/{len(queries)} '{query}' returned {len(results)} results")
            await self._set_progress(job, band_progress(JobStatus.SEARCHING, i + 1, len(queries)))

        unique = sorted(best.values(), key=lambda r: r.relevance_score, reverse=True)
        job.sources.searched = len(unique)
        if not unique:
            raise NoSearchResultsError(f"No search results for '{job.query}'")

        await self.store.persist_checkpoint(job.id, "search", {"results": [r.model_dump() for r in unique]})
        await self._save(job)
        logger.info(f"Job {job.id}: {len(unique)} unique search results")
        return unique

    # --- Phase 2: Crawl (30-60%) ---

    async def crawl_phase(self, job: ResearchJob, results: List[AggregatedResult], cancel_token: CancellationToken) -> List[CrawledPage]:
        await self._enter_phase(job, JobStatus.CRAWLING, cancel_token)

        targets = [r.url for r in results[: job.options.max_sources]]
        order = {url: index for index, url in enumerate(targets)}
        kept: List[CrawledPage] = []
        done = 0

        async for url, outcome in self.crawler.fetch_many(targets, job.id):
            done += 1
            if isinstance(outcome, CrawledPage):
                if len(outcome.content) > self.min_content_length:
                    kept.append(outcome)
                else:
                    logger.info(f"Job {job.id}: discarding {url}, only {len(outcome.content)} chars of content")
            await self._set_progress(job, band_progress(JobStatus.CRAWLING, done, len(targets)))

        kept.sort(key=lambda page: order.get(page.url, len(order)))
        job.sources.crawled = len(kept)
        await self.store.persist_checkpoint(job.id, "crawl", {"pages": [p.model_dump() for p in kept]})
        await self._save(job)
        logger.info(f"Job {job.id}: crawled {len(kept)}/{len(targets)} usable pages")
        return kept

    # --- Phase 3: Analyze (60-85%) ---

    def passes_relevance_gate(self, relevant: bool, score: float) -> bool:
        return relevant and score > self.relevance_threshold

    async def analyze_phase(self, job: ResearchJob, pages: List[CrawledPage], cancel_token: CancellationToken) -> List[RelevantPage]:
        await self._enter_phase(job, JobStatus.ANALYZING, cancel_token)
        warnings: List[str] = []

        relevant: List[RelevantPage] = []
        for page in pages:
            try:
                assessment = await self.analyzer.assess_relevance(page.content, job.query)
            except AnalyzerError as e:
                logger.warning(f"Job {job.id}: relevance check failed for {page.url}: {e}")
                continue
            if self.passes_relevance_gate(assessment.relevant, assessment.score):
                relevant.append(
                    RelevantPage(
                        **page.model_dump(),
                        relevant=assessment.relevant,
                        score=assessment.score,
                        reason=assessment.reason,
                    )
                )

        job.sources.relevant = len(relevant)
        if not relevant:
            logger.warning(f"Job {job.id}: no relevant sources, the report will be degraded")
            warnings.append(NO_RELEVANT_SOURCES)
        await self._set_progress(job, 75)

        combined = "\n\n".join(page.content for page in relevant)
        # Regex extraction is CPU-bound; keep it off the event loop.
        extracted = await asyncio.to_thread(self.entity_extractor.extract, combined)
        analyzer_entities = AnalyzerEntities()
        if combined:
            try:
                analyzer_entities = await self.analyzer.extract_entities(combined)
            except AnalyzerError as e:
                logger.warning(f"Job {job.id}: analyzer entity extraction returned malformed output: {e}")
                warnings.append(MALFORMED_ENTITY_OUTPUT)

        job.analysis = {
            "entities": analyzer_entities.model_dump(),
            "extracted_entities": extracted.model_dump(),
            "warnings": warnings,
        }
        await self.store.persist_checkpoint(
            job.id,
            "analyze",
            {"relevant": [{"url": p.url, "title": p.title, "score": p.score} for p in relevant]},
        )
        await self._set_progress(job, 85)
        return relevant

    # --- Phase 4: Generate (85-100%) ---

    async def generate_phase(
        self,
        job: ResearchJob,
        template: ReportTemplate,
        relevant: List[RelevantPage],
        cancel_token: CancellationToken,
    ):
        await self._enter_phase(job, JobStatus.GENERATING, cancel_token)

        report = await self.analyzer.generate_report(relevant, template, job.query)
        await self._set_progress(job, 95)

        job.sources.urls = [SourceRef(url=p.url, title=p.title) for p in relevant]
        analysis: Dict[str, Any] = dict(job.analysis)
        analysis["summary"] = report.summary
        job.analysis = analysis

        await cancel_token.raise_if_cancelled(job)
        await self.commit_completed(job, report)
        logger.info(f"Job {job.id}: completed with {len(report.sections)} sections from {len(relevant)} sources")

    async def commit_completed(self, job: ResearchJob, report: Report):
        """
        Persists the completed state from a copy first. The live job only becomes
        Completed once that write succeeded, so a failed write leaves it Generating
        and retryable.
        """
        completed = job.model_copy(deep=True)
        completed.mark_completed(report)
        await self.store.update_job(completed)

        job.mark_completed(report)
        job.last_heartbeat = completed.last_heartbeat
        if self.broadcaster is not None:
            await self.broadcaster.publish(job)
        try:
            await self.store.clear_checkpoint(job.id)
        except StorageError as e:
            logger.warning(f"Job {job.id}: completed, but its checkpoints could not be cleared: {e}")
