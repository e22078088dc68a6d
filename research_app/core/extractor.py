import json
import logging
from typing import List, Optional, Dict, Any, Tuple, Union
from urllib.parse import urljoin
from bs4 import BeautifulSoup, Comment
from pydantic import BaseModel

from research_app.utils.text_utils import collapse_whitespace

logger = logging.getLogger(__name__)

# Subtrees that never hold article text.
NOISE_SELECTORS = [
    "script", "style", "noscript", "iframe", "nav", "header", "footer", "aside",
    ".sidebar", ".ads", ".advertisement", ".social-share", ".comments",
    '[role="navigation"]', '[role="banner"]',
]

# Tried in order; the first one with text wins.
MAIN_CONTENT_SELECTORS = [
    "article",
    '[role="main"]',
    "main",
    ".post-content",
    ".article-content",
    ".entry-content",
    ".content",
    "#content",
    ".post",
    ".article",
]

# (attribute, value) pairs checked in priority order for each metadata field.
TITLE_META = [("property", "og:title"), ("name", "twitter:title")]
DESCRIPTION_META = [("property", "og:description"), ("name", "description"), ("name", "twitter:description")]
AUTHOR_META = [("name", "author"), ("property", "article:author")]
PUBLISHED_META = [("property", "article:published_time"), ("name", "date")]
MODIFIED_META = [("property", "article:modified_time"), ("name", "last-modified")]


class ExtractedContent(BaseModel):
    """
    Normalized view of a fetched HTML page.
    """
    title: str = ""
    description: str = ""
    author: Optional[str] = None
    published_date: Optional[str] = None
    modified_date: Optional[str] = None
    keywords: List[str] = []
    main_content: str = ""
    images: List[str] = []
    links: List[Dict[str, str]] = []
    structured_data: List[Any] = []
    open_graph: Dict[str, str] = {}
    twitter_card: Dict[str, str] = {}


class ContentExtractor:
    """
    Parses fetched HTML into normalized text plus metadata using BeautifulSoup.
    """
    def __init__(self, parser: str = "html.parser"):
        self.parser = parser

    def parse(self, html: str) -> BeautifulSoup:
        return BeautifulSoup(html or "", self.parser)

    def _soup(self, source: Union[str, BeautifulSoup]) -> BeautifulSoup:
        """Every extract_* method takes raw HTML or an already parsed document."""
        if isinstance(source, BeautifulSoup):
            return source
        return self.parse(source)

    @staticmethod
    def _first_meta(soup: BeautifulSoup, candidates: List[Tuple[str, str]]) -> Optional[str]:
        for attr, value in candidates:
            tag = soup.find("meta", attrs={attr: value})
            if tag is not None:
                content = (tag.get("content") or "").strip()
                if content:
                    return content
        return None

    def extract_title(self, soup: BeautifulSoup) -> str:
        """Open Graph title, then Twitter card title, then <title>, then the first heading."""
        title = self._first_meta(soup, TITLE_META)
        if title:
            return collapse_whitespace(title)
        if soup.title is not None:
            text = collapse_whitespace(soup.title.get_text())
            if text:
                return text
        for heading in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
            text = collapse_whitespace(heading.get_text(" "))
            if text:
                return text
        return ""

    def extract_metadata(self, html: Union[str, BeautifulSoup]) -> Dict[str, Any]:
        """
        Pulls title, description, author, dates and keywords from the page head.
        """
        soup = self._soup(html)

        author = self._first_meta(soup, AUTHOR_META)
        if not author:
            rel_author = soup.find(attrs={"rel": "author"})
            if rel_author is not None:
                author = collapse_whitespace(rel_author.get_text(" ")) or None

        published = self._first_meta(soup, PUBLISHED_META)
        if not published:
            time_tag = soup.find("time", attrs={"datetime": True})
            if time_tag is not None:
                published = time_tag.get("datetime") or None

        keywords_str = self._first_meta(soup, [("name", "keywords")])
        keywords = [k.strip() for k in keywords_str.split(",") if k.strip()] if keywords_str else []

        return {
            "title": self.extract_title(soup),
            "description": self._first_meta(soup, DESCRIPTION_META) or "",
            "author": author,
            "published_date": published,
            "modified_date": self._first_meta(soup, MODIFIED_META),
            "keywords": keywords,
        }

    def extract_main_content(self, html: Union[str, BeautifulSoup]) -> str:
        """
        Strips boilerplate subtrees, then returns the text of the first main-content
        selector that matches with text, falling back to the whole body. A parsed
        document passed in is modified in place.
        """
        soup = self._soup(html)

        for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
            comment.extract()
        for selector in NOISE_SELECTORS:
            for element in soup.select(selector):
                element.decompose()

        for selector in MAIN_CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            text = collapse_whitespace(element.get_text(" "))
            if text:
                return text

        body = soup.body or soup
        return collapse_whitespace(body.get_text(" "))

    def extract_links(self, html: Union[str, BeautifulSoup], base_url: str) -> List[Dict[str, str]]:
        soup = self._soup(html)
        links: List[Dict[str, str]] = []
        seen = set()

        for a_tag in soup.find_all("a", href=True):
            href = a_tag["href"].strip()
            if not href or href.startswith("#") or href.lower().startswith("javascript:"):
                continue
            url = urljoin(base_url, href)
            text = collapse_whitespace(a_tag.get_text(" "))
            if url not in seen and 0 < len(text) < 200:
                seen.add(url)
                links.append({"text": text, "url": url})
        return links

    def extract_images(self, html: Union[str, BeautifulSoup], base_url: str) -> List[str]:
        soup = self._soup(html)
        images: List[str] = []
        for img in soup.find_all("img", src=True):
            url = urljoin(base_url, img["src"].strip())
            if url not in images:
                images.append(url)
        return images

    def extract_structured_data(self, html: Union[str, BeautifulSoup]) -> List[Any]:
        """Parses every JSON-LD block; blocks that are not valid JSON are skipped."""
        soup = self._soup(html)
        blocks: List[Any] = []
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            raw = script.string or script.get_text()
            if not raw or not raw.strip():
                continue
            try:
                blocks.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.debug("Skipping invalid JSON-LD block.")
        return blocks

    def _prefixed_meta(self, soup: BeautifulSoup, attr: str, prefix: str) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for tag in soup.find_all("meta", attrs={attr: True}):
            key = tag.get(attr, "")
            content = tag.get("content")
            if key.startswith(prefix) and content:
                values.setdefault(key[len(prefix):], content)
        return values

    def extract_open_graph(self, html: Union[str, BeautifulSoup]) -> Dict[str, str]:
        return self._prefixed_meta(self._soup(html), "property", "og:")

    def extract_twitter_card(self, html: Union[str, BeautifulSoup]) -> Dict[str, str]:
        return self._prefixed_meta(self._soup(html), "name", "twitter:")

    def extract_all(self, html: str, base_url: str) -> ExtractedContent:
        """
        Parses the page once and runs every extractor over the same document. Main
        content goes last because stripping boilerplate removes the script and meta
        tags the others read.
        """
        soup = self.parse(html)
        metadata = self.extract_metadata(soup)
        images = self.extract_images(soup, base_url)
        links = self.extract_links(soup, base_url)
        structured_data = self.extract_structured_data(soup)
        open_graph = self.extract_open_graph(soup)
        twitter_card = self.extract_twitter_card(soup)
        return ExtractedContent(
            **metadata,
            main_content=self.extract_main_content(soup),
            images=images,
            links=links,
            structured_data=structured_data,
            open_graph=open_graph,
            twitter_card=twitter_card,
        )
