import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

import redis.asyncio as redis

from research_app.background.celery_worker import celery, RESEARCH_TASK, WATCHDOG_TASK
from research_app.config import settings
from research_app.core.analyzer import TextAnalyzer
from research_app.core.crawler import WebCrawler
from research_app.core.entities import RegexEntityExtractor
from research_app.core.orchestrator import ResearchOrchestrator
from research_app.core.search import SearchAggregator, BraveSearchProvider, DuckDuckGoHtmlProvider
from research_app.exceptions import TransientError, StorageError
from research_app.services.events import RedisStatusBroadcaster
from research_app.services.job_store import RedisJobStore
from research_app.services.notifier import WebhookNotifier
from research_app.services.templates import TemplateRegistry
from research_app.services.worker import ResearchWorker, fail_stalled_jobs
from research_app.utils.logger import setup_logging
from research_app.utils.rate_limiter import RedisStartRateLimiter

setup_logging()
logger = logging.getLogger(__name__)


def build_search_aggregator() -> SearchAggregator:
    aggregator = SearchAggregator()
    for name in settings.SEARCH_PROVIDERS:
        name = name.lower()
        if name == "brave":
            if not settings.BRAVE_API_KEY:
                logger.warning("Brave Search not configured: BRAVE_API_KEY is empty.")
                continue
            aggregator.add_provider(BraveSearchProvider(
                api_key=settings.BRAVE_API_KEY,
                base_url=settings.BRAVE_SEARCH_URL,
                weight=settings.BRAVE_WEIGHT,
                timeout=settings.SEARCH_REQUEST_TIMEOUT,
            ))
        elif name == "duckduckgo":
            aggregator.add_provider(DuckDuckGoHtmlProvider(
                base_url=settings.DUCKDUCKGO_URL,
                weight=settings.DUCKDUCKGO_WEIGHT,
                timeout=settings.SEARCH_REQUEST_TIMEOUT,
            ))
        else:
            logger.warning(f"Unknown search provider '{name}' ignored.")
    logger.info(f"Search providers: {[p.name for p in aggregator.providers]}")
    return aggregator


@asynccontextmanager
async def worker_runtime():
    """
    Builds the pipeline for one task run on the task's own event loop and closes
    every client afterwards.
    """
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    store = RedisJobStore(client=client)
    broadcaster = RedisStatusBroadcaster(client=client)
    aggregator = build_search_aggregator()
    crawler = WebCrawler(
        user_agent=settings.CRAWLER_USER_AGENT,
        request_timeout=settings.CRAWLER_REQUEST_TIMEOUT,
        max_redirects=settings.CRAWLER_MAX_REDIRECTS,
        max_concurrency=settings.CRAWLER_MAX_CONCURRENCY,
    )
    notifier = None
    if settings.WEBHOOK_URLS:
        notifier = WebhookNotifier(settings.WEBHOOK_URLS, settings.WEBHOOK_SECRET, settings.WEBHOOK_TIMEOUT)

    orchestrator = ResearchOrchestrator(
        store=store,
        templates=TemplateRegistry(),
        aggregator=aggregator,
        crawler=crawler,
        analyzer=TextAnalyzer(settings),
        entity_extractor=RegexEntityExtractor(),
        broadcaster=broadcaster,
        results_per_query=settings.SEARCH_RESULTS_PER_QUERY,
        min_content_length=settings.MIN_CONTENT_LENGTH,
        relevance_threshold=settings.RELEVANCE_THRESHOLD,
    )
    worker = ResearchWorker(
        store=store,
        runner=orchestrator,
        rate_limiter=RedisStartRateLimiter(
            settings.QUEUE_RATE_LIMIT_MAX,
            settings.QUEUE_RATE_LIMIT_WINDOW_SECONDS,
            client=client,
        ),
        broadcaster=broadcaster,
        notifier=notifier,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        final_write_attempts=settings.FINAL_WRITE_ATTEMPTS,
    )
    try:
        yield worker
    finally:
        await crawler.close()
        await aggregator.close()
        if notifier is not None:
            await notifier.close()
        await client.aclose()


async def _run_research_async(job_id: str, attempt: int):
    """
    Internal asynchronous function that takes one delivery of a job through the pipeline.
    """
    async with worker_runtime() as worker:
        job = await worker.dequeue(job_id)
        if job is None:
            return
        await worker.process(job, attempt)


async def _run_watchdog_async() -> List[str]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        return await fail_stalled_jobs(
            RedisJobStore(client=client),
            settings.WATCHDOG_THRESHOLD_SECONDS,
            RedisStatusBroadcaster(client=client),
        )
    finally:
        await client.aclose()


def _run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery.task(
    bind=True,
    name=RESEARCH_TASK,
    autoretry_for=(TransientError,),
    retry_backoff=settings.QUEUE_BACKOFF_BASE_SECONDS,
    retry_backoff_max=settings.QUEUE_BACKOFF_MAX_SECONDS,
    retry_jitter=False,
    max_retries=settings.QUEUE_MAX_ATTEMPTS - 1,
    soft_time_limit=settings.CELERY_SOFT_TIME_LIMIT,
    time_limit=settings.CELERY_HARD_TIME_LIMIT,
)
def research_task(self, job_id: str):
    """
    Celery task wrapper for the research pipeline. Transient errors re-raised by the
    worker are retried by Celery after 1x, 2x, 4x... the backoff base.
    """
    attempt = self.request.retries + 1
    logger.info(f"Job {job_id}: research task received (attempt {attempt}).")
    _run(_run_research_async(job_id, attempt))


@celery.task(bind=True, name=WATCHDOG_TASK)
def watchdog_task(self):
    """
    Celery beat task that marks running jobs without a recent heartbeat as failed.
    """
    logger.info("Watchdog task started: Scanning for stuck jobs.")
    try:
        failed = _run(_run_watchdog_async())
    except StorageError as e:
        logger.error(f"Watchdog scan failed: {e}", exc_info=True)
        return []

    if not failed:
        logger.info("Watchdog found no stuck jobs.")
    return failed
