from typing import List
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """
    # App
    APP_NAME: str = "Research FastAPI"
    APP_VERSION: str = "0.1.0"
    API_PREFIX: str = "/api"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_PATH: str = "logs/"
    NOISY_LOG_LEVEL: str = "WARNING"

    # Text Analyzer provider
    LLM_PROVIDER: str = "openai"

    # OpenAI-compatible chat API (OpenRouter by default)
    OPENAI_API_KEY: str = "your_openai_api_key"
    OPENAI_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENAI_ANALYSIS_MODEL: str = "anthropic/claude-3-haiku"
    OPENAI_REPORT_MODEL: str = "anthropic/claude-3-sonnet"

    # Gemini
    GEMINI_API_KEY: str = "your_gemini_api_key"
    GEMINI_ANALYSIS_MODEL: str = "models/gemini-1.5-flash"
    GEMINI_REPORT_MODEL: str = "models/gemini-1.5-pro"

    # Characters of page content sent to each analyzer call
    ANALYZER_RELEVANCE_CHARS: int = 2000
    ANALYZER_ENTITY_CHARS: int = 8000
    ANALYZER_SOURCE_CHARS: int = 3000
    ANALYZER_REPORT_CHARS: int = 20000

    # Search
    SEARCH_PROVIDERS: List[str] = ["brave", "duckduckgo"]
    SEARCH_RESULTS_PER_QUERY: int = 5
    BRAVE_API_KEY: str = ""
    BRAVE_SEARCH_URL: str = "https://api.search.brave.com/res/v1/web/search"
    BRAVE_WEIGHT: float = 1.0
    DUCKDUCKGO_URL: str = "https://html.duckduckgo.com/html/"
    DUCKDUCKGO_WEIGHT: float = 0.8
    SEARCH_REQUEST_TIMEOUT: int = 30

    # Crawler
    CRAWLER_USER_AGENT: str = "ResearchFastAPIBot/0.1 (research crawler)"
    CRAWLER_REQUEST_TIMEOUT: int = 10
    CRAWLER_MAX_REDIRECTS: int = 3
    CRAWLER_MAX_CONCURRENCY: int = 3

    # Pipeline gates
    MIN_CONTENT_LENGTH: int = 100
    RELEVANCE_THRESHOLD: float = 0.5

    # Job queue (Celery workers)
    QUEUE_CONCURRENCY: int = 2 # Celery worker_concurrency
    QUEUE_RATE_LIMIT_MAX: int = 5 # Job starts allowed per window, across all workers
    QUEUE_RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_BACKOFF_BASE_SECONDS: int = 1 # Delay before the first retry; doubles on each later one
    QUEUE_BACKOFF_MAX_SECONDS: int = 600
    FINAL_WRITE_ATTEMPTS: int = 3 # Tries to persist a job's terminal state

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_SOFT_TIME_LIMIT: int = 1800 # Soft time limit for research tasks (30 minutes)
    CELERY_HARD_TIME_LIMIT: int = 1900 # Hard time limit (slightly longer)

    # Job store, cancellation flags, status events and the start limiter
    REDIS_URL: str = "redis://localhost:6379/0"

    # Watchdog for stuck jobs
    WATCHDOG_INTERVAL_SECONDS: int = 300 # How often the watchdog runs (5 minutes)
    WATCHDOG_THRESHOLD_SECONDS: int = 600 # How long a job can be inactive before watchdog marks it failed (10 minutes)

    # Completion webhooks
    WEBHOOK_URLS: List[str] = []
    WEBHOOK_SECRET: str = ""
    WEBHOOK_TIMEOUT: int = 10

    class Config:
        case_sensitive = True

# Instantiate settings
settings = Settings()
