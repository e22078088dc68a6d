"""Custom exceptions for the research pipeline.

Every exception carries a stable ``reason`` code. The code is what ends up in a
failed job's ``error`` field; the exception message goes to ``error_message``.
"""


class ResearchError(Exception):
    """Base exception for research pipeline errors."""

    reason = "internal_error"
    retryable = False


class ValidationError(ResearchError):
    """Raised when a research submission is rejected before it is queued."""

    reason = "validation_error"


class TransientError(ResearchError):
    """Raised for infrastructure failures that the job queue retries."""

    reason = "transient_error"
    retryable = True


class SearchUnavailableError(TransientError):
    """Raised when every registered search provider failed for a query."""

    reason = "search_unavailable"


class AnalyzerUnavailableError(TransientError):
    """Raised when the text analyzer could not be reached."""

    reason = "analyzer_unavailable"


class StorageError(TransientError):
    """Raised when the job store could not be read or written."""

    reason = "storage_unavailable"


class CrawlError(ResearchError):
    """Raised when a single page could not be fetched. Absorbed per page."""

    reason = "crawl_failed"


class AnalyzerError(ResearchError):
    """Raised when the text analyzer returned output that fails its schema."""

    reason = "malformed_analyzer_output"


class NoSearchResultsError(ResearchError):
    """Raised when the search phase produced nothing to crawl."""

    reason = "no_search_results"


class JobCancelledError(ResearchError):
    """Raised at a phase boundary when cancellation was requested."""

    reason = "cancelled"


class QueueUnavailableError(TransientError):
    """Raised when a job could not be handed to the task broker."""

    reason = "queue_unavailable"


class JobTimeoutError(ResearchError):
    """Raised when a job ran past the worker's soft time limit."""

    reason = "timeout"
