import json
import logging
import re
from typing import List, Optional, Type, TypeVar, Sequence
from abc import ABC, abstractmethod

# Third-party imports
import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError as PydanticValidationError

# Internal project imports
from research_app.exceptions import AnalyzerError, AnalyzerUnavailableError, ResearchError
from research_app.models.analysis import RelevanceAssessment, AnalyzerEntities, ReportDraft
from research_app.models.document import CrawledPage
from research_app.models.report import Report, SourceRef
from research_app.models.template import ReportTemplate
from research_app.utils.text_utils import truncate

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_structured(raw: Optional[str], schema: Type[SchemaT], call: str) -> SchemaT:
    """
    Parses a model response into the given schema. The response must be a single JSON
    object, optionally wrapped in a markdown code fence.
    """
    text = CODE_FENCE.sub("", (raw or "").strip()).strip()
    if not text:
        raise AnalyzerError(f"{call}: empty response from analyzer")
    try:
        return schema.model_validate(json.loads(text))
    except json.JSONDecodeError as e:
        raise AnalyzerError(f"{call}: response is not valid JSON ({e.msg})") from e
    except PydanticValidationError as e:
        raise AnalyzerError(f"{call}: response does not match schema ({e.error_count()} errors)") from e


class BaseAnalyzer(ABC):
    """
    Abstract base class for Text Analyzer implementations. Subclasses only provide the
    raw completion call; prompts and response validation live here.
    """
    def __init__(
        self,
        relevance_chars: int = 2000,
        entity_chars: int = 8000,
        source_chars: int = 3000,
        report_chars: int = 20000,
    ):
        self.relevance_chars = relevance_chars
        self.entity_chars = entity_chars
        self.source_chars = source_chars
        self.report_chars = report_chars

    @abstractmethod
    async def _complete(self, system: str, prompt: str, report: bool = False, temperature: float = 0.1, max_tokens: int = 1000) -> str:
        """
        Sends one system + user exchange and returns the raw text. report=True selects
        the stronger report model. Connectivity problems raise AnalyzerUnavailableError.
        """
        pass

    async def assess_relevance(self, content: str, query: str) -> RelevanceAssessment:
        prompt = (
            f'Assess if this content is relevant to the query: "{query}"\n\n'
            f"Content (first {self.relevance_chars} chars):\n"
            f"{truncate(content, self.relevance_chars)}\n\n"
            "Return JSON:\n"
            '{"relevant": true/false, "score": 0.0-1.0, "reason": "brief explanation"}'
        )
        raw = await self._complete(
            "You assess content relevance. Return only JSON.", prompt, temperature=0.1, max_tokens=200
        )
        return parse_structured(raw, RelevanceAssessment, "assess_relevance")

    async def extract_entities(self, text: str) -> AnalyzerEntities:
        prompt = (
            "Extract named entities from this text and categorize them:\n\n"
            f"{truncate(text, self.entity_chars)}\n\n"
            "Return JSON:\n"
            "{\n"
            '  "people": [{"name": "...", "role": "if mentioned"}],\n'
            '  "companies": [{"name": "...", "industry": "if known"}],\n'
            '  "products": [{"name": "...", "type": "if known"}]\n'
            "}"
        )
        raw = await self._complete(
            "You are an entity extraction specialist. Return only valid JSON.", prompt, temperature=0.1, max_tokens=1500
        )
        return parse_structured(raw, AnalyzerEntities, "extract_entities")

    def _format_sources(self, sources: Sequence[CrawledPage]) -> str:
        combined = "\n\n".join(
            f"--- Source: {page.title} ({page.url}) ---\n{truncate(page.content, self.source_chars)}"
            for page in sources
        )
        return truncate(combined, self.report_chars)

    async def generate_report(self, sources: Sequence[CrawledPage], template: ReportTemplate, query: str) -> Report:
        """
        Synthesizes a report over the given sources following the template's sections.
        The response must contain at least one section.
        """
        section_lines = "\n".join(
            f"- {section.title}: {section.id}" + (f" ({section.description})" if section.description else "")
            for section in template.sections
        )
        material = self._format_sources(sources) if sources else (
            "No relevant sources were found. Say clearly where information is missing instead of guessing."
        )
        prompt = (
            f'You are creating a {template.name} report about: "{query}"\n\n'
            f"Based on the following source material:\n{material}\n\n"
            f"{template.analysis_prompt}\n\n"
            f"Generate a comprehensive report with these sections:\n{section_lines}\n\n"
            "Return as JSON:\n"
            "{\n"
            '  "title": "Report title",\n'
            '  "summary": "Executive summary (2-3 paragraphs)",\n'
            '  "sections": [{"id": "section_id", "title": "Section Title", "content": "Section content in markdown format"}]\n'
            "}"
        )
        raw = await self._complete(
            "You are an expert research analyst creating comprehensive reports. "
            "Return valid JSON with markdown content in sections.",
            prompt,
            report=True,
            temperature=0.4,
            max_tokens=4000,
        )
        draft = parse_structured(raw, ReportDraft, "generate_report")
        return Report(
            title=draft.title or f"{template.name}: {query}",
            summary=draft.summary,
            sections=draft.sections,
            sources=[SourceRef(url=page.url, title=page.title) for page in sources],
        )


# --- OpenAI-compatible Analyzer Implementation ---

class OpenAIAnalyzer(BaseAnalyzer):
    """
    Analyzer using an OpenAI-compatible chat completions API (OpenRouter by default).
    """
    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        analysis_model: str = "anthropic/claude-3-haiku",
        report_model: str = "anthropic/claude-3-sonnet",
        client: Optional[AsyncOpenAI] = None,
        **limits,
    ):
        super().__init__(**limits)
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.analysis_model = analysis_model
        self.report_model = report_model
        logger.info(f"Initialized OpenAIAnalyzer with models: {self.analysis_model} / {self.report_model}")

    async def _complete(self, system: str, prompt: str, report: bool = False, temperature: float = 0.1, max_tokens: int = 1000) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.report_model if report else self.analysis_model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            # APITimeoutError is a subclass of APIConnectionError
            raise AnalyzerUnavailableError(f"OpenAI-compatible API unavailable: {e}") from e
        except openai.APIError as e:
            raise ResearchError(f"OpenAI-compatible API rejected the request: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


# --- Google Gemini Analyzer Implementation ---

class GeminiAnalyzer(BaseAnalyzer):
    """
    Analyzer using Google's Gemini models via google-generativeai.
    """
    def __init__(
        self,
        api_key: str,
        analysis_model: str = "models/gemini-1.5-flash",
        report_model: str = "models/gemini-1.5-pro",
        **limits,
    ):
        super().__init__(**limits)
        self.analysis_model = analysis_model
        self.report_model = report_model
        self.configured = bool(api_key) and api_key != "your_gemini_api_key"

        if not self.configured:
            logger.error("Gemini API key is not set.")
        else:
            # Global configuration for google-generativeai
            genai.configure(api_key=api_key)
            logger.info(f"Initialized GeminiAnalyzer with models: {self.analysis_model} / {self.report_model}")

    async def _complete(self, system: str, prompt: str, report: bool = False, temperature: float = 0.1, max_tokens: int = 1000) -> str:
        if not self.configured:
            raise ResearchError("Gemini API key is not configured.")

        model = genai.GenerativeModel(
            self.report_model if report else self.analysis_model,
            system_instruction=system,
        )
        try:
            response = await model.generate_content_async(
                prompt,
                generation_config={
                    "temperature": temperature,
                    "max_output_tokens": max_tokens,
                    "response_mime_type": "application/json",
                },
            )
        except (
            google_exceptions.ServiceUnavailable,
            google_exceptions.DeadlineExceeded,
            google_exceptions.ResourceExhausted,
            google_exceptions.InternalServerError,
        ) as e:
            raise AnalyzerUnavailableError(f"Gemini API unavailable: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            raise ResearchError(f"Gemini API rejected the request: {e}") from e

        try:
            return response.text
        except ValueError as e:
            # Raised when the candidate was blocked and carries no text part
            raise AnalyzerError(f"Gemini returned no text: {e}") from e


# --- Analyzer Factory ---

class TextAnalyzer:
    """
    Factory class to provide the configured analyzer instance and delegate to it.
    """
    def __init__(self, config):
        self.config = config
        self._analyzer_instance: BaseAnalyzer = self._initialize_analyzer()

    def _initialize_analyzer(self) -> BaseAnalyzer:
        limits = dict(
            relevance_chars=self.config.ANALYZER_RELEVANCE_CHARS,
            entity_chars=self.config.ANALYZER_ENTITY_CHARS,
            source_chars=self.config.ANALYZER_SOURCE_CHARS,
            report_chars=self.config.ANALYZER_REPORT_CHARS,
        )
        provider = self.config.LLM_PROVIDER.lower()
        if provider == "openai":
            analyzer = OpenAIAnalyzer(
                api_key=self.config.OPENAI_API_KEY,
                base_url=self.config.OPENAI_BASE_URL,
                analysis_model=self.config.OPENAI_ANALYSIS_MODEL,
                report_model=self.config.OPENAI_REPORT_MODEL,
                **limits,
            )
        elif provider == "gemini":
            analyzer = GeminiAnalyzer(
                api_key=self.config.GEMINI_API_KEY,
                analysis_model=self.config.GEMINI_ANALYSIS_MODEL,
                report_model=self.config.GEMINI_REPORT_MODEL,
                **limits,
            )
        else:
            raise ValueError(f"Unsupported LLM_PROVIDER: {self.config.LLM_PROVIDER}")
        logger.info(f"Active Analyzer Provider: {provider}")
        return analyzer

    async def assess_relevance(self, content: str, query: str) -> RelevanceAssessment:
        return await self._analyzer_instance.assess_relevance(content, query)

    async def extract_entities(self, text: str) -> AnalyzerEntities:
        return await self._analyzer_instance.extract_entities(text)

    async def generate_report(self, sources: List[CrawledPage], template: ReportTemplate, query: str) -> Report:
        return await self._analyzer_instance.generate_report(sources, template, query)
