"""
Core pipeline components
"""
from .extractor import ContentExtractor
from .crawler import WebCrawler
from .search import SearchAggregator, SearchProvider, BraveSearchProvider, DuckDuckGoHtmlProvider
from .entities import EntityExtractor, RegexEntityExtractor
from .analyzer import TextAnalyzer
from .orchestrator import ResearchOrchestrator

__all__ = [
    "ContentExtractor",
    "WebCrawler",
    "SearchAggregator",
    "SearchProvider",
    "BraveSearchProvider",
    "DuckDuckGoHtmlProvider",
    "EntityExtractor",
    "RegexEntityExtractor",
    "TextAnalyzer",
    "ResearchOrchestrator",
]
