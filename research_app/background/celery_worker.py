from celery import Celery
from research_app.config import settings

RESEARCH_TASK = "research_task"
WATCHDOG_TASK = "watchdog_task"


def create_celery_app(
    broker_url: str,
    result_backend: str,
    concurrency: int = 2,
    watchdog_interval_seconds: float = 300,
    soft_time_limit: int = 1800,
    hard_time_limit: int = 1900,
) -> Celery:
    """
    Builds the Celery app that carries research jobs. Jobs are acknowledged only
    after the task returns, so a worker that dies mid-job leaves the message in the
    broker for redelivery.
    """
    app = Celery(
        'research_fastapi',
        broker=broker_url,
        backend=result_backend,
        include=['research_app.background.tasks']
    )
    app.conf.update(
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=concurrency,
        broker_connection_retry_on_startup=True,
        result_expires=3600,  # Results expire after 1 hour
        task_soft_time_limit=soft_time_limit,
        task_time_limit=hard_time_limit,
        beat_schedule={
            "fail-stalled-jobs": {
                "task": WATCHDOG_TASK,
                "schedule": float(watchdog_interval_seconds),
            },
        },
    )
    return app


# Worker and beat entry point: celery -A research_app.background.celery_worker worker --beat
celery = create_celery_app(
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    concurrency=settings.QUEUE_CONCURRENCY,
    watchdog_interval_seconds=settings.WATCHDOG_INTERVAL_SECONDS,
    soft_time_limit=settings.CELERY_SOFT_TIME_LIMIT,
    hard_time_limit=settings.CELERY_HARD_TIME_LIMIT,
)
