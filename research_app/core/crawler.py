import httpx
import asyncio
import logging
from typing import List, Optional, Tuple, Union, AsyncIterator

from research_app.core.extractor import ContentExtractor
from research_app.exceptions import CrawlError
from research_app.models.document import CrawledPage

logger = logging.getLogger(__name__)

CrawlOutcome = Union[CrawledPage, CrawlError]


class WebCrawler:
    """
    Fetches single URLs over HTTP with a bounded timeout and redirect count, and
    hands the HTML to the ContentExtractor.
    """
    def __init__(
        self,
        user_agent: str,
        request_timeout: float = 10,
        max_redirects: int = 3,
        max_concurrency: int = 3,
        extractor: Optional[ContentExtractor] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_redirects = max_redirects
        self.max_concurrency = max(1, max_concurrency)
        self.extractor = extractor or ContentExtractor()
        self.client = client or httpx.AsyncClient(
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml",
            },
            timeout=self.request_timeout,
            follow_redirects=True,
            max_redirects=self.max_redirects,
        )

    async def _fetch_html(self, url: str) -> str:
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.TooManyRedirects as e:
            raise CrawlError(f"Too many redirects fetching {url}: {e}") from e
        except httpx.HTTPStatusError as e:
            raise CrawlError(f"HTTP {e.response.status_code} fetching {url}") from e
        except httpx.RequestError as e:
            raise CrawlError(f"Request error fetching {url}: {e}") from e

        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type.lower():
            raise CrawlError(f"Unsupported content type '{content_type}' at {url}")
        return response.text

    async def fetch(self, url: str, job_id: Optional[str] = None) -> CrawledPage:
        """
        Fetches and extracts one page. Any transport, HTTP or content-type problem is
        raised as a CrawlError; the caller decides whether to skip the page.
        """
        html = await self._fetch_html(url)
        extracted = self.extractor.extract_all(html, url)
        logger.info(f"Job {job_id}: Fetched {url} ({len(extracted.main_content)} chars of content)")

        metadata = extracted.model_dump(exclude={"title", "main_content"})
        return CrawledPage(
            url=url,
            title=extracted.title,
            content=extracted.main_content,
            metadata=metadata,
        )

    async def fetch_many(self, urls: List[str], job_id: Optional[str] = None) -> AsyncIterator[Tuple[str, CrawlOutcome]]:
        """
        Fetches URLs with at most max_concurrency requests in flight and yields
        (url, page_or_error) as each one finishes. Errors are isolated per URL.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(url: str) -> Tuple[str, CrawlOutcome]:
            async with semaphore:
                try:
                    return url, await self.fetch(url, job_id)
                except CrawlError as e:
                    logger.warning(f"Job {job_id}: Skipping {url}: {e}")
                    return url, e

        tasks = [asyncio.ensure_future(_guarded(url)) for url in urls]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def close(self):
        await self.client.aclose()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def __aenter__(self):
        return self
