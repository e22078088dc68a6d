import re
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional, Dict, Tuple
from urllib.parse import urlsplit, parse_qs, unquote

import httpx
from bs4 import BeautifulSoup

from research_app.exceptions import SearchUnavailableError
from research_app.models.document import SearchResult, AggregatedResult

logger = logging.getLogger(__name__)

BRAVE_MAX_COUNT = 20

# Maps the pipeline's freshness code to each provider's parameter value.
BRAVE_FRESHNESS = {"pd": "pd", "pw": "pw", "pm": "pm", "py": "py"}
DUCKDUCKGO_FRESHNESS = {"pd": "d", "pw": "w", "pm": "m", "py": "y"}

AUTHORITY_DOMAINS = [
    "wikipedia.org",
    "github.com",
    "stackoverflow.com",
    "medium.com",
    "reuters.com",
    "bbc.com",
    "nytimes.com",
    "techcrunch.com",
    "wired.com",
    "forbes.com",
    "bloomberg.com",
    "arxiv.org",
    "nature.com",
    "sciencedirect.com",
]

AGE_PATTERN = re.compile(r"(\d+)\s*(minute|hour|day|week|month|year)", re.IGNORECASE)
AGE_UNIT_DAYS = {"minute": 0, "hour": 0, "day": 1, "week": 7, "month": 30, "year": 365}


def normalize_url(url: str) -> str:
    """
    Canonical form used for deduplication: lowercase, no "www.", no query string or
    fragment, no trailing slash. Applying it twice gives the same result.
    """
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError:
        return url.strip().lower()
    if not parts.scheme or not hostname:
        return url.strip().lower()

    if hostname.startswith("www."):
        hostname = hostname[4:]
    normalized = f"{parts.scheme}://{hostname}{parts.path}".rstrip("/")
    return normalized.lower()


def get_domain(url: str) -> str:
    try:
        hostname = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    return hostname[4:] if hostname.startswith("www.") else hostname


def is_authority_domain(domain: str) -> bool:
    domain = domain.lower()
    return any(domain == d or domain.endswith("." + d) for d in AUTHORITY_DOMAINS)


def parse_age_days(age: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Age in days of a result, from a relative string ("3 days ago", "2 hours ago") or an
    ISO-8601 timestamp. Returns None when the value cannot be parsed.
    """
    if not age:
        return None

    match = AGE_PATTERN.search(age)
    if match:
        return float(int(match.group(1)) * AGE_UNIT_DAYS[match.group(2).lower()])

    try:
        published = datetime.fromisoformat(age.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if published.tzinfo is None:
        published = published.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - published).total_seconds() / 86400)


def recency_bonus(age: Optional[str], now: Optional[datetime] = None) -> float:
    days = parse_age_days(age, now)
    if days is None:
        return 0.0
    if days < 7:
        return 0.3
    if days < 30:
        return 0.2
    if days < 90:
        return 0.1
    return 0.0


def score_result(result: SearchResult, query: str, weight: float = 1.0, now: Optional[datetime] = None) -> float:
    """
    Additive relevance score starting at the provider weight, rounded to 2 decimals.
    """
    query_lower = query.lower().strip()
    terms = list(dict.fromkeys(t for t in query_lower.split() if len(t) > 2))
    title_lower = result.title.lower()
    snippet_lower = result.snippet.lower()

    score = weight
    if query_lower and query_lower in title_lower:
        score += 0.5
    score += 0.3 * sum(1 for term in terms if term in title_lower)
    score += 0.1 * sum(1 for term in terms if term in snippet_lower)
    score += recency_bonus(result.published_at, now)
    if is_authority_domain(get_domain(result.url)):
        score += 0.2
    return round(score, 2)


class SearchProvider(ABC):
    """
    A web search backend registered with the aggregator under a name and weight.
    """
    def __init__(self, name: str, weight: float = 1.0):
        self.name = name
        self.weight = weight

    @abstractmethod
    async def search(self, query: str, count: int = 10, freshness: Optional[str] = None) -> List[SearchResult]:
        """
        Returns up to count results for the query. freshness is one of pd/pw/pm/py.
        Raises on any failure; the aggregator isolates the error.
        """
        pass

    async def close(self):
        pass


class BraveSearchProvider(SearchProvider):
    """
    Brave Search web API. Requires an API key.
    """
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.search.brave.com/res/v1/web/search",
        weight: float = 1.0,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("BRAVE_API_KEY is required for the Brave search provider")
        super().__init__("brave", weight)
        self.base_url = base_url
        self.client = client or httpx.AsyncClient(
            headers={
                "Accept": "application/json",
                "Accept-Encoding": "gzip",
                "X-Subscription-Token": api_key,
            },
            timeout=timeout,
        )

    async def search(self, query: str, count: int = 10, freshness: Optional[str] = None) -> List[SearchResult]:
        params: Dict[str, object] = {"q": query, "count": min(count, BRAVE_MAX_COUNT)}
        if freshness in BRAVE_FRESHNESS:
            params["freshness"] = BRAVE_FRESHNESS[freshness]

        try:
            response = await self.client.get(self.base_url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise SearchUnavailableError("Invalid BRAVE_API_KEY") from e
            if status == 429:
                raise SearchUnavailableError("Brave API rate limit exceeded") from e
            raise SearchUnavailableError(f"Brave Search API error: {status}") from e
        except httpx.RequestError as e:
            raise SearchUnavailableError(f"Brave Search request failed: {e}") from e

        payload = response.json()
        results = []
        for item in payload.get("web", {}).get("results", []) or []:
            results.append(
                SearchResult(
                    title=item.get("title") or "",
                    url=item.get("url") or "",
                    snippet=item.get("description") or "",
                    published_at=item.get("age") or item.get("page_age") or None,
                )
            )
        return [r for r in results if r.url]

    async def close(self):
        await self.client.aclose()


class DuckDuckGoHtmlProvider(SearchProvider):
    """
    Keyless provider that scrapes the DuckDuckGo HTML results page.
    """
    def __init__(
        self,
        base_url: str = "https://html.duckduckgo.com/html/",
        weight: float = 0.8,
        timeout: float = 30.0,
        user_agent: str = "Mozilla/5.0 (compatible; ResearchFastAPIBot/0.1)",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__("duckduckgo", weight)
        self.base_url = base_url
        self.client = client or httpx.AsyncClient(
            headers={
                "User-Agent": user_agent,
                "Accept": "text/html,application/xhtml+xml",
                "Accept-Language": "en-US,en;q=0.9",
            },
            timeout=timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _resolve_href(href: str) -> str:
        # Result links may be wrapped in a /l/?uddg=<target> redirect.
        if href.startswith("//"):
            href = "https:" + href
        parts = urlsplit(href)
        if parts.path.startswith("/l/"):
            target = parse_qs(parts.query).get("uddg")
            if target:
                return unquote(target[0])
        return href

    def _parse_results(self, html: str, count: int) -> List[SearchResult]:
        soup = BeautifulSoup(html, "html.parser")
        results: List[SearchResult] = []
        for div in soup.select("div.result"):
            title_link = div.select_one("a.result__a")
            if title_link is None:
                continue
            url = self._resolve_href(title_link.get("href", ""))
            title = title_link.get_text(strip=True)
            snippet_tag = div.select_one(".result__snippet")
            snippet = snippet_tag.get_text(" ", strip=True) if snippet_tag else ""
            if title and url.startswith("http"):
                results.append(SearchResult(title=title, url=url, snippet=snippet))
            if len(results) >= count:
                break
        return results

    async def search(self, query: str, count: int = 10, freshness: Optional[str] = None) -> List[SearchResult]:
        data = {"q": query}
        if freshness in DUCKDUCKGO_FRESHNESS:
            data["df"] = DUCKDUCKGO_FRESHNESS[freshness]

        try:
            response = await self.client.post(self.base_url, data=data)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SearchUnavailableError(f"DuckDuckGo returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise SearchUnavailableError(f"DuckDuckGo request failed: {e}") from e

        return self._parse_results(response.text, count)

    async def close(self):
        await self.client.aclose()


class SearchAggregator:
    """
    Fans a query out to every registered provider, then deduplicates, scores and ranks
    the merged results.
    """
    def __init__(self, providers: Optional[List[SearchProvider]] = None):
        self.providers: List[SearchProvider] = list(providers or [])

    def add_provider(self, provider: SearchProvider):
        self.providers.append(provider)

    def remove_provider(self, name: str):
        self.providers = [p for p in self.providers if p.name != name]

    async def _search_provider(
        self, provider: SearchProvider, query: str, count: int, freshness: Optional[str]
    ) -> Optional[List[Tuple[SearchResult, SearchProvider]]]:
        try:
            results = await provider.search(query, count, freshness)
        except Exception as e:
            logger.warning(f"Search provider '{provider.name}' failed for '{query}': {e}")
            return None
        return [(result, provider) for result in results]

    @staticmethod
    def deduplicate(hits: List[Tuple[SearchResult, SearchProvider]]) -> List[Tuple[SearchResult, SearchProvider]]:
        """
        One hit per normalized URL, preferring the higher-weighted provider and then the
        longer snippet. The first-seen position of each URL is kept.
        """
        by_url: Dict[str, Tuple[SearchResult, SearchProvider]] = {}
        for result, provider in hits:
            key = normalize_url(result.url)
            existing = by_url.get(key)
            if existing is None:
                by_url[key] = (result, provider)
                continue
            kept, kept_provider = existing
            if provider.weight > kept_provider.weight or (
                provider.weight == kept_provider.weight and len(result.snippet) > len(kept.snippet)
            ):
                by_url[key] = (result, provider)
        return list(by_url.values())

    async def search(self, query: str, count: int = 10, freshness: Optional[str] = None) -> List[AggregatedResult]:
        """
        Returns at most count results ranked by descending relevance_score. Raises
        SearchUnavailableError only when no provider is registered or all of them fail.
        """
        if not self.providers:
            raise SearchUnavailableError("No search providers configured")

        outcomes = await asyncio.gather(
            *(self._search_provider(p, query, count, freshness) for p in self.providers)
        )
        if all(outcome is None for outcome in outcomes):
            raise SearchUnavailableError(f"All search providers failed for '{query}'")

        hits = [hit for outcome in outcomes if outcome for hit in outcome]
        now = datetime.now(timezone.utc)
        ranked = [
            AggregatedResult(
                **result.model_dump(),
                source=provider.name,
                relevance_score=score_result(result, query, provider.weight, now),
            )
            for result, provider in self.deduplicate(hits)
        ]
        # sorted() is stable, so equal scores keep provider order.
        ranked = sorted(ranked, key=lambda r: r.relevance_score, reverse=True)
        logger.debug(f"Search '{query}': {len(hits)} hits, {len(ranked)} after dedup")
        return ranked[:count]

    async def close(self):
        for provider in self.providers:
            await provider.close()
