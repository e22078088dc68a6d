import threading
import pytest
from conftest import FakeCrawler, FakeAnalyzer, page_text
from research_app.core.entities import RegexEntityExtractor
from research_app.core.orchestrator import (
    ResearchOrchestrator,
    band_progress,
    NO_RELEVANT_SOURCES,
    MALFORMED_ENTITY_OUTPUT,
)
from research_app.exceptions import NoSearchResultsError, JobCancelledError, StorageError
from research_app.models.job import ResearchJob, ResearchOptions, JobStatus
from research_app.services.events import StatusBroadcaster
from research_app.services.queue import CancellationToken

URLS = ["https://a.example.com", "https://b.example.com", "https://c.example.com", "https://d.example.com"]


def build(job_store, templates, aggregator, crawler, analyzer, broadcaster=None, entity_extractor=None):
    return ResearchOrchestrator(
        store=job_store,
        templates=templates,
        aggregator=aggregator,
        crawler=crawler,
        analyzer=analyzer,
        entity_extractor=entity_extractor or RegexEntityExtractor(),
        broadcaster=broadcaster,
    )


async def new_job(job_store, **options):
    job = ResearchJob(query="Acme Corp", template_id="test-profile", options=ResearchOptions(**options))
    await job_store.create_job(job)
    return job


def test_band_progress():
    assert band_progress(JobStatus.SEARCHING, 0, 2) == 0
    assert band_progress(JobStatus.SEARCHING, 1, 2) == 15
    assert band_progress(JobStatus.CRAWLING, 3, 3) == 60
    assert band_progress(JobStatus.ANALYZING, 0, 0) == 85


@pytest.mark.parametrize("relevant,score,expected", [
    (True, 0.51, True),
    (True, 0.5, False),
    (False, 0.9, False),
])
def test_relevance_gate_is_strict(job_store, templates, make_aggregator, relevant, score, expected):
    orchestrator = build(job_store, templates, make_aggregator([]), FakeCrawler({}), FakeAnalyzer())
    assert orchestrator.passes_relevance_gate(relevant, score) is expected


@pytest.mark.asyncio
async def test_full_run(job_store, templates, make_aggregator):
    """Test a complete run: gates applied, report attached, progress monotonic up to 100."""
    crawler = FakeCrawler({
        URLS[0]: page_text("alpha", 300),
        URLS[1]: page_text("bravo", 100), # not longer than the minimum
        URLS[2]: page_text("charlie", 101),
        URLS[3]: page_text("delta", 99),
    })
    analyzer = FakeAnalyzer(scores={"alpha": (True, 0.9), "charlie": (True, 0.5)})
    broadcaster = StatusBroadcaster()
    orchestrator = build(job_store, templates, make_aggregator(URLS), crawler, analyzer, broadcaster)
    job = await new_job(job_store)

    await orchestrator.run(job, CancellationToken())

    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.sources.searched == 4
    assert job.sources.crawled == 2
    assert job.sources.relevant == 1
    assert [s.url for s in job.sources.urls] == [URLS[0]]
    assert job.report is not None
    assert job.analysis["warnings"] == []
    assert job.analysis["summary"] == "Summary of 1 sources."
    assert [p.url for p in analyzer.report_sources] == [URLS[0]]

    progress = [p for _, p in job_store.history]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    statuses = [s for s, _ in job_store.history]
    assert statuses.index(JobStatus.SEARCHING) < statuses.index(JobStatus.CRAWLING) \
        < statuses.index(JobStatus.ANALYZING) < statuses.index(JobStatus.GENERATING) \
        < statuses.index(JobStatus.COMPLETED)

    assert job_store.checkpoint_phases == ["search", "crawl", "analyze"]
    assert await job_store.load_checkpoint(job.id) == {}
    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_search_runs_every_template_query(job_store, templates, make_aggregator):
    aggregator = make_aggregator(URLS[:1])
    crawler = FakeCrawler({URLS[0]: page_text("alpha")})
    orchestrator = build(job_store, templates, aggregator, crawler, FakeAnalyzer({"alpha": (True, 0.9)}))
    job = await new_job(job_store)

    await orchestrator.run(job, CancellationToken())

    assert aggregator.providers[0].queries == ["Acme Corp overview", "Acme Corp news"]


@pytest.mark.asyncio
async def test_max_sources_caps_crawl(job_store, templates, make_aggregator):
    crawler = FakeCrawler({url: page_text("alpha") for url in URLS})
    orchestrator = build(job_store, templates, make_aggregator(URLS), crawler, FakeAnalyzer({"alpha": (True, 0.9)}))
    job = await new_job(job_store, max_sources=2)

    await orchestrator.run(job, CancellationToken())

    assert crawler.fetched == URLS[:2]


@pytest.mark.asyncio
async def test_no_search_results_fails(job_store, templates, make_aggregator):
    """Test that an empty search phase stops the pipeline before crawling."""
    crawler = FakeCrawler({})
    orchestrator = build(job_store, templates, make_aggregator([]), crawler, FakeAnalyzer())
    job = await new_job(job_store)

    with pytest.raises(NoSearchResultsError):
        await orchestrator.run(job, CancellationToken())

    assert crawler.fetched == []
    assert job.status == JobStatus.SEARCHING


@pytest.mark.asyncio
async def test_no_relevant_sources_still_generates(job_store, templates, make_aggregator):
    """Test that zero relevant pages produce a degraded report with a warning."""
    crawler = FakeCrawler({URLS[0]: page_text("alpha"), URLS[1]: page_text("bravo")})
    analyzer = FakeAnalyzer(scores={"alpha": (False, 0.8), "bravo": (True, 0.2)})
    orchestrator = build(job_store, templates, make_aggregator(URLS[:2]), crawler, analyzer)
    job = await new_job(job_store)

    await orchestrator.run(job, CancellationToken())

    assert job.status == JobStatus.COMPLETED
    assert job.sources.relevant == 0
    assert job.analysis["warnings"] == [NO_RELEVANT_SOURCES]
    assert analyzer.report_sources == []


@pytest.mark.asyncio
async def test_unreachable_pages_are_skipped(job_store, templates, make_aggregator):
    crawler = FakeCrawler({URLS[1]: page_text("bravo")}) # every other URL raises CrawlError
    analyzer = FakeAnalyzer(scores={"bravo": (True, 0.9)})
    orchestrator = build(job_store, templates, make_aggregator(URLS), crawler, analyzer)
    job = await new_job(job_store)

    await orchestrator.run(job, CancellationToken())

    assert job.sources.crawled == 1
    assert job.sources.relevant == 1


@pytest.mark.asyncio
async def test_malformed_relevance_output_skips_page(job_store, templates, make_aggregator):
    crawler = FakeCrawler({URLS[0]: page_text("alpha"), URLS[1]: page_text("bravo")})
    analyzer = FakeAnalyzer(scores={"alpha": (True, None), "bravo": (True, 0.9)})
    orchestrator = build(job_store, templates, make_aggregator(URLS[:2]), crawler, analyzer)
    job = await new_job(job_store)

    await orchestrator.run(job, CancellationToken())

    assert [s.url for s in job.sources.urls] == [URLS[1]]


@pytest.mark.asyncio
async def test_malformed_entity_output_is_a_warning(job_store, templates, make_aggregator):
    crawler = FakeCrawler({URLS[0]: page_text("alpha")})
    analyzer = FakeAnalyzer(scores={"alpha": (True, 0.9)}, entities_error=True)
    orchestrator = build(job_store, templates, make_aggregator(URLS[:1]), crawler, analyzer)
    job = await new_job(job_store)

    await orchestrator.run(job, CancellationToken())

    assert job.status == JobStatus.COMPLETED
    assert job.analysis["warnings"] == [MALFORMED_ENTITY_OUTPUT]
    assert job.analysis["entities"] == {"people": [], "companies": [], "products": []}


@pytest.mark.asyncio
async def test_cancel_during_crawl_stops_before_analyze(job_store, templates, make_aggregator):
    """Test that a cancellation raised mid-phase is honored at the next phase boundary."""
    token = CancellationToken()
    crawler = FakeCrawler({URLS[0]: page_text("alpha")}, on_fetch=lambda url: token.cancel())
    analyzer = FakeAnalyzer(scores={"alpha": (True, 0.9)})
    orchestrator = build(job_store, templates, make_aggregator(URLS[:1]), crawler, analyzer)
    job = await new_job(job_store)

    with pytest.raises(JobCancelledError):
        await orchestrator.run(job, token)

    assert job.status == JobStatus.CRAWLING
    assert analyzer.assessed == []
    assert analyzer.report_sources is None


@pytest.mark.asyncio
async def test_cancel_flag_on_job_is_observed(job_store, templates, make_aggregator):
    crawler = FakeCrawler({})
    orchestrator = build(job_store, templates, make_aggregator(URLS[:1]), crawler, FakeAnalyzer())
    job = await new_job(job_store)
    job.cancel_requested = True

    with pytest.raises(JobCancelledError):
        await orchestrator.run(job, CancellationToken())

    assert job.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_stale_checkpoints_are_discarded(job_store, templates, make_aggregator):
    crawler = FakeCrawler({URLS[0]: page_text("alpha")})
    orchestrator = build(job_store, templates, make_aggregator(URLS[:1]), crawler, FakeAnalyzer({"alpha": (True, 0.9)}))
    job = await new_job(job_store)
    await job_store.persist_checkpoint(job.id, "crawl", {"pages": ["stale"]})

    await orchestrator.run(job, CancellationToken())

    assert await job_store.load_checkpoint(job.id) == {}
    assert crawler.fetched == URLS[:1]


@pytest.mark.asyncio
async def test_progress_is_broadcast(job_store, templates, make_aggregator):
    broadcaster = StatusBroadcaster()
    crawler = FakeCrawler({URLS[0]: page_text("alpha")})
    orchestrator = build(
        job_store, templates, make_aggregator(URLS[:1]), crawler, FakeAnalyzer({"alpha": (True, 0.9)}), broadcaster
    )
    job = await new_job(job_store)
    subscription = await broadcaster.subscribe(job.id)

    await orchestrator.run(job, CancellationToken())

    snapshots = [snapshot async for snapshot in subscription]
    assert snapshots[-1].status == JobStatus.COMPLETED
    assert [s.progress for s in snapshots] == sorted(s.progress for s in snapshots)


@pytest.mark.asyncio
async def test_cancel_flag_in_store_is_observed(job_store, templates, make_aggregator):
    """Test that a cancellation recorded by another process stops the pipeline at the next phase."""
    crawler = FakeCrawler({})
    orchestrator = build(job_store, templates, make_aggregator(URLS[:1]), crawler, FakeAnalyzer())
    job = await new_job(job_store)
    await job_store.request_cancel(job.id)

    with pytest.raises(JobCancelledError):
        await orchestrator.run(job, CancellationToken(job_store, job.id))

    assert job.cancel_requested is True
    assert crawler.fetched == []


class ThreadRecordingExtractor(RegexEntityExtractor):
    def __init__(self):
        self.threads = []

    def extract(self, text):
        self.threads.append(threading.current_thread())
        return super().extract(text)


@pytest.mark.asyncio
async def test_entity_extraction_runs_off_the_event_loop(job_store, templates, make_aggregator):
    extractor = ThreadRecordingExtractor()
    crawler = FakeCrawler({URLS[0]: page_text("alpha")})
    orchestrator = build(
        job_store, templates, make_aggregator(URLS[:1]), crawler, FakeAnalyzer({"alpha": (True, 0.9)}),
        entity_extractor=extractor,
    )
    job = await new_job(job_store)

    await orchestrator.run(job, CancellationToken())

    assert len(extractor.threads) == 1
    assert extractor.threads[0] is not threading.current_thread()


@pytest.mark.asyncio
async def test_failed_completion_write_leaves_job_generating(job_store, templates, make_aggregator):
    """Test that the job only turns Completed once the completed state is stored."""
    original_update = job_store.update_job

    async def update_job(job):
        if job.status == JobStatus.COMPLETED:
            raise StorageError("Redis went away")
        await original_update(job)

    job_store.update_job = update_job
    crawler = FakeCrawler({URLS[0]: page_text("alpha")})
    orchestrator = build(job_store, templates, make_aggregator(URLS[:1]), crawler, FakeAnalyzer({"alpha": (True, 0.9)}))
    job = await new_job(job_store)

    with pytest.raises(StorageError):
        await orchestrator.run(job, CancellationToken())

    assert job.status == JobStatus.GENERATING
    assert job.report is None
    assert job.completed_at is None
    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.GENERATING
    assert JobStatus.COMPLETED not in [status for status, _ in job_store.history]
