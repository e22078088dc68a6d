import pytest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

from research_app.background import tasks
from research_app.background.celery_worker import create_celery_app, RESEARCH_TASK, WATCHDOG_TASK
from research_app.background.tasks import research_task, watchdog_task
from research_app.config import settings
from research_app.exceptions import TransientError, SearchUnavailableError, StorageError


def test_create_celery_app_configuration():
    """Test the broker, delivery and beat settings of the Celery app."""
    app = create_celery_app("redis://broker:6379/1", "redis://backend:6379/2", concurrency=4, watchdog_interval_seconds=60)

    assert app.conf.broker_url == "redis://broker:6379/1"
    assert app.conf.result_backend == "redis://backend:6379/2"
    assert app.conf.worker_concurrency == 4
    assert app.conf.task_acks_late is True
    assert app.conf.worker_prefetch_multiplier == 1
    schedule = app.conf.beat_schedule["fail-stalled-jobs"]
    assert schedule["task"] == WATCHDOG_TASK
    assert schedule["schedule"] == 60.0


def test_research_task_retry_policy():
    assert research_task.name == RESEARCH_TASK
    assert research_task.autoretry_for == (TransientError,)
    assert research_task.max_retries == settings.QUEUE_MAX_ATTEMPTS - 1
    assert research_task.retry_backoff == settings.QUEUE_BACKOFF_BASE_SECONDS
    assert research_task.retry_jitter is False


def test_research_task_runs_the_job():
    with patch.object(tasks, "_run_research_async", new=AsyncMock()) as run_async:
        result = research_task.apply(args=["job-1"])

    assert result.successful()
    run_async.assert_awaited_once_with("job-1", 1)


def test_research_task_retries_transient_errors():
    """Test that a transient failure is retried with the next attempt number."""
    run_async = AsyncMock(side_effect=[SearchUnavailableError("down"), None])
    with patch.object(tasks, "_run_research_async", new=run_async):
        result = research_task.apply(args=["job-1"])

    assert result.successful()
    assert [c.args for c in run_async.await_args_list] == [("job-1", 1), ("job-1", 2)]


def test_research_task_stops_after_max_attempts():
    run_async = AsyncMock(side_effect=SearchUnavailableError("down"))
    with patch.object(tasks, "_run_research_async", new=run_async):
        result = research_task.apply(args=["job-1"])

    assert result.failed()
    assert isinstance(result.result, SearchUnavailableError)
    assert run_async.await_count == settings.QUEUE_MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_run_research_async_processes_dequeued_job():
    worker = MagicMock()
    job = MagicMock()
    worker.dequeue = AsyncMock(return_value=job)
    worker.process = AsyncMock()

    @asynccontextmanager
    async def fake_runtime():
        yield worker

    with patch.object(tasks, "worker_runtime", new=fake_runtime):
        await tasks._run_research_async("job-1", 2)

    worker.dequeue.assert_awaited_once_with("job-1")
    worker.process.assert_awaited_once_with(job, 2)


@pytest.mark.asyncio
async def test_run_research_async_skips_undeliverable_job():
    worker = MagicMock()
    worker.dequeue = AsyncMock(return_value=None)
    worker.process = AsyncMock()

    @asynccontextmanager
    async def fake_runtime():
        yield worker

    with patch.object(tasks, "worker_runtime", new=fake_runtime):
        await tasks._run_research_async("job-1", 1)

    worker.process.assert_not_awaited()


def test_watchdog_task_returns_failed_ids():
    with patch.object(tasks, "_run_watchdog_async", new=AsyncMock(return_value=["job-1"])):
        result = watchdog_task.apply()

    assert result.get() == ["job-1"]


def test_watchdog_task_survives_store_outage():
    with patch.object(tasks, "_run_watchdog_async", new=AsyncMock(side_effect=StorageError("down"))):
        result = watchdog_task.apply()

    assert result.get() == []
