"""
Service layer components
"""
from .job_store import JobStore, RedisJobStore, InMemoryJobStore
from .queue import ResearchQueue, CancellationToken
from .worker import ResearchWorker, fail_stalled_jobs
from .templates import TemplateRegistry
from .events import StatusBroadcaster, RedisStatusBroadcaster
from .notifier import WebhookNotifier

__all__ = [
    "JobStore",
    "RedisJobStore",
    "InMemoryJobStore",
    "ResearchQueue",
    "CancellationToken",
    "ResearchWorker",
    "fail_stalled_jobs",
    "TemplateRegistry",
    "StatusBroadcaster",
    "RedisStatusBroadcaster",
    "WebhookNotifier",
]
