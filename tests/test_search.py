import pytest
import httpx
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from research_app.core.search import (
    SearchAggregator,
    SearchProvider,
    BraveSearchProvider,
    DuckDuckGoHtmlProvider,
    normalize_url,
    is_authority_domain,
    parse_age_days,
    recency_bonus,
    score_result,
)
from research_app.exceptions import SearchUnavailableError
from research_app.models.document import SearchResult

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class StaticProvider(SearchProvider):
    """Provider returning fixed results, or raising when given an exception."""
    def __init__(self, name, weight=1.0, results=None, error=None):
        super().__init__(name, weight)
        self.results = results or []
        self.error = error
        self.calls = []

    async def search(self, query, count=10, freshness=None):
        self.calls.append((query, count, freshness))
        if self.error is not None:
            raise self.error
        return list(self.results)


# --- URL normalization ---

@pytest.mark.parametrize("url", [
    "https://www.Example.com/Path/",
    "https://example.com/path?utm_source=x",
    "https://example.com/path#section",
    "HTTPS://EXAMPLE.COM/path",
])
def test_normalize_url_variants(url):
    """Test that cosmetic URL differences collapse to one key."""
    assert normalize_url(url) == "https://example.com/path"


def test_normalize_url_idempotent():
    once = normalize_url("https://www.example.com/a/b/?q=1")
    assert normalize_url(once) == once


def test_normalize_url_unparseable():
    assert normalize_url("  Not A URL ") == "not a url"


def test_authority_domain_suffix_match():
    """Test that subdomains match but look-alike domains do not."""
    assert is_authority_domain("en.wikipedia.org")
    assert is_authority_domain("github.com")
    assert not is_authority_domain("notgithub.com")


# --- Scoring ---

def test_parse_age_days():
    assert parse_age_days("3 days ago", NOW) == 3
    assert parse_age_days("2 weeks ago", NOW) == 14
    assert parse_age_days("5 hours ago", NOW) == 0
    assert parse_age_days("2024-05-30T00:00:00Z", NOW) == 2
    assert parse_age_days("sometime", NOW) is None
    assert parse_age_days(None, NOW) is None


def test_recency_bonus_bands():
    assert recency_bonus("1 day ago", NOW) == 0.3
    assert recency_bonus("10 days ago", NOW) == 0.2
    assert recency_bonus("2 months ago", NOW) == 0.1
    assert recency_bonus("1 year ago", NOW) == 0.0
    assert recency_bonus(None, NOW) == 0.0


def test_exact_title_match_outranks_unrelated_title():
    """Test that a title containing the whole query beats an unrelated title."""
    matching = SearchResult(title="Acme Corp raises $10M", url="https://news.example.com/a", snippet="funding")
    unrelated = SearchResult(title="Startup funding news", url="https://news.example.com/b", snippet="funding")

    assert score_result(matching, "Acme Corp", 1.0, NOW) > score_result(unrelated, "Acme Corp", 1.0, NOW)


def test_score_components():
    """Test the additive scoring: weight + exact match + title terms + snippet terms + recency + authority."""
    result = SearchResult(
        title="Acme Corp overview",
        url="https://en.wikipedia.org/wiki/Acme",
        snippet="Acme is a corp",
        published_at="2 days ago",
    )
    # 1.0 + 0.5 + 0.3*2 + 0.1*2 + 0.3 + 0.2
    assert score_result(result, "Acme Corp", 1.0, NOW) == 2.8


def test_score_ignores_short_terms():
    result = SearchResult(title="AI is here", url="https://example.com", snippet="")
    assert score_result(result, "AI", 0.8, NOW) == 1.3


# --- Aggregation ---

def test_deduplicate_prefers_weight_then_snippet():
    """Test that the higher-weighted provider wins, then the longer snippet."""
    heavy = StaticProvider("heavy", weight=1.0)
    light = StaticProvider("light", weight=0.5)
    other = StaticProvider("other", weight=1.0)

    hits = [
        (SearchResult(title="A", url="https://example.com/a", snippet="long snippet from light"), light),
        (SearchResult(title="B", url="https://example.com/b", snippet="short"), heavy),
        (SearchResult(title="A", url="https://www.example.com/a/", snippet="x"), heavy),
        (SearchResult(title="B", url="https://example.com/b?ref=1", snippet="a longer snippet"), other),
    ]

    deduped = SearchAggregator.deduplicate(hits)

    assert [(r.url, p.name) for r, p in deduped] == [
        ("https://www.example.com/a/", "heavy"),
        ("https://example.com/b?ref=1", "other"),
    ]


@pytest.mark.asyncio
async def test_aggregator_merges_and_ranks():
    """Test merged, deduplicated results ordered by descending score."""
    brave = StaticProvider("brave", 1.0, results=[
        SearchResult(title="Something else", url="https://example.com/other", snippet=""),
        SearchResult(title="Acme Corp profile", url="https://example.com/acme", snippet="Acme Corp"),
    ])
    ddg = StaticProvider("duckduckgo", 0.8, results=[
        SearchResult(title="Acme Corp profile", url="https://www.example.com/acme/", snippet="dup"),
    ])
    aggregator = SearchAggregator([brave, ddg])

    results = await aggregator.search("Acme Corp", count=10, freshness="pm")

    assert [r.url for r in results] == ["https://example.com/acme", "https://example.com/other"]
    assert results[0].source == "brave"
    assert results[0].relevance_score >= results[1].relevance_score
    assert brave.calls == [("Acme Corp", 10, "pm")]


@pytest.mark.asyncio
async def test_aggregator_truncates_to_count():
    provider = StaticProvider("p", results=[
        SearchResult(title=f"Result {i}", url=f"https://example.com/{i}") for i in range(8)
    ])
    results = await SearchAggregator([provider]).search("query", count=3)
    assert len(results) == 3


@pytest.mark.asyncio
async def test_aggregator_isolates_provider_failure():
    """Test that one failing provider does not fail the search."""
    failing = StaticProvider("broken", error=RuntimeError("boom"))
    working = StaticProvider("ok", results=[SearchResult(title="Hit", url="https://example.com/hit")])

    results = await SearchAggregator([failing, working]).search("query")

    assert [r.url for r in results] == ["https://example.com/hit"]


@pytest.mark.asyncio
async def test_aggregator_all_providers_fail():
    aggregator = SearchAggregator([
        StaticProvider("a", error=RuntimeError("boom")),
        StaticProvider("b", error=SearchUnavailableError("rate limited")),
    ])
    with pytest.raises(SearchUnavailableError):
        await aggregator.search("query")


@pytest.mark.asyncio
async def test_aggregator_without_providers():
    with pytest.raises(SearchUnavailableError):
        await SearchAggregator().search("query")


@pytest.mark.asyncio
async def test_aggregator_empty_results_are_not_a_failure():
    results = await SearchAggregator([StaticProvider("empty")]).search("query")
    assert results == []


def test_add_and_remove_provider():
    aggregator = SearchAggregator()
    aggregator.add_provider(StaticProvider("a"))
    aggregator.add_provider(StaticProvider("b"))
    aggregator.remove_provider("a")
    assert [p.name for p in aggregator.providers] == ["b"]


# --- Providers ---

@pytest.fixture
def mock_httpx_client():
    client = MagicMock()
    client.get = AsyncMock()
    client.post = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_brave_provider_parses_results(mock_httpx_client):
    """Test Brave response parsing and request parameters."""
    mock_httpx_client.get.return_value = MagicMock(
        raise_for_status=lambda: None,
        json=lambda: {"web": {"results": [
            {"title": "Acme", "url": "https://acme.com", "description": "Rockets", "age": "2 days ago"},
            {"title": "No URL"},
        ]}},
    )
    provider = BraveSearchProvider(api_key="key", client=mock_httpx_client)

    results = await provider.search("acme", count=50, freshness="pw")

    assert results == [SearchResult(title="Acme", url="https://acme.com", snippet="Rockets", published_at="2 days ago")]
    _, kwargs = mock_httpx_client.get.call_args
    assert kwargs["params"] == {"q": "acme", "count": 20, "freshness": "pw"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 429, 500])
async def test_brave_provider_http_errors(mock_httpx_client, status_code):
    request = httpx.Request("GET", "https://api.search.brave.com")
    mock_httpx_client.get.side_effect = httpx.HTTPStatusError(
        message="error", request=request, response=httpx.Response(status_code, request=request)
    )
    provider = BraveSearchProvider(api_key="key", client=mock_httpx_client)

    with pytest.raises(SearchUnavailableError):
        await provider.search("acme")


def test_brave_provider_requires_key():
    with pytest.raises(ValueError):
        BraveSearchProvider(api_key="")


DDG_HTML = """
<html><body>
    <div class="result">
        <a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Facme.com%2Fabout&rut=abc">Acme About</a>
        <a class="result__snippet">Acme builds <b>rockets</b>.</a>
    </div>
    <div class="result">
        <a class="result__a" href="https://example.org/news">Acme News</a>
    </div>
    <div class="result">
        <span>Ad without a title link</span>
    </div>
</body></html>
"""


@pytest.mark.asyncio
async def test_duckduckgo_provider_parses_html(mock_httpx_client):
    """Test DuckDuckGo HTML parsing, including redirect-wrapped links."""
    mock_httpx_client.post.return_value = MagicMock(text=DDG_HTML, raise_for_status=lambda: None)
    provider = DuckDuckGoHtmlProvider(client=mock_httpx_client)

    results = await provider.search("acme", count=10, freshness="pm")

    assert [(r.title, r.url) for r in results] == [
        ("Acme About", "https://acme.com/about"),
        ("Acme News", "https://example.org/news"),
    ]
    assert results[0].snippet == "Acme builds rockets ."
    _, kwargs = mock_httpx_client.post.call_args
    assert kwargs["data"] == {"q": "acme", "df": "m"}


@pytest.mark.asyncio
async def test_duckduckgo_provider_request_error(mock_httpx_client):
    mock_httpx_client.post.side_effect = httpx.ConnectError(
        "refused", request=httpx.Request("POST", "https://html.duckduckgo.com/html/")
    )
    provider = DuckDuckGoHtmlProvider(client=mock_httpx_client)

    with pytest.raises(SearchUnavailableError):
        await provider.search("acme")
