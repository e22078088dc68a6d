"""
Worker side of the job queue.

A Celery task hands each delivered job id to ResearchWorker, which waits for a
slot from the shared start limiter, runs the pipeline once and records the
outcome. Celery owns retry scheduling: when an attempt fails transiently and
attempts remain, the job is put back to pending and the error is re-raised for
the task's autoretry policy.
"""
import asyncio
import logging
from typing import Optional, List, Callable, Awaitable

from celery.exceptions import SoftTimeLimitExceeded

from research_app.exceptions import (
    ResearchError,
    TransientError,
    JobCancelledError,
    JobTimeoutError,
    StorageError,
)
from research_app.models.job import ResearchJob, JobStatus, utcnow
from research_app.services.events import StatusBroadcaster
from research_app.services.job_store import JobStore
from research_app.services.notifier import WebhookNotifier
from research_app.services.queue import CancellationToken
from research_app.utils.rate_limiter import StartRateLimiter

logger = logging.getLogger(__name__)

STALLED = "stalled"


class ResearchWorker:
    """
    Executes one delivery of a research job.
    """
    def __init__(
        self,
        store: JobStore,
        runner,
        rate_limiter: StartRateLimiter,
        broadcaster: Optional[StatusBroadcaster] = None,
        notifier: Optional[WebhookNotifier] = None,
        max_attempts: int = 3,
        final_write_attempts: int = 3,
        final_write_backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.runner = runner
        self.rate_limiter = rate_limiter
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.notifier = notifier
        self.max_attempts = max(1, max_attempts)
        self.final_write_attempts = max(1, final_write_attempts)
        self.final_write_backoff_seconds = final_write_backoff_seconds
        self.sleep = sleep

    async def dequeue(self, job_id: str) -> Optional[ResearchJob]:
        """
        Loads a delivered job and waits for a start slot. Returns None for jobs that
        are gone, already finished, or cancelled before they got a slot.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            logger.error(f"Job {job_id}: delivered but not found in the job store.")
            return None
        if job.is_terminal:
            logger.info(f"Job {job_id}: already {job.status.value}, skipping delivery.")
            return None

        token = CancellationToken(self.store, job_id)
        if not await self.rate_limiter.acquire(abort=token.check):
            job = await self.store.get_job(job_id)
            if job is not None and not job.is_terminal:
                job.cancel_requested = True
                await self._finish_failed(job, JobCancelledError("Job cancelled before it started"))
            logger.info(f"Job {job_id}: cancelled while waiting for a start slot.")
            return None

        job = await self.store.get_job(job_id)
        if job is None or job.is_terminal:
            return None
        if job.status != JobStatus.PENDING:
            # Redelivered after a worker died mid-run; start over from the first phase.
            logger.warning(f"Job {job_id}: redelivered while {job.status.value}, restarting.")
            job.reset_for_retry()
        return job

    async def process(self, job: ResearchJob, attempt: int = 1) -> ResearchJob:
        """
        Runs one attempt of the pipeline. Returns the job once it is completed or
        failed; re-raises transient errors that should be retried.
        """
        token = CancellationToken(self.store, job.id)
        job.attempts = attempt
        if job.started_at is None:
            job.started_at = utcnow()
        logger.info(f"Job {job.id}: starting attempt {attempt}/{self.max_attempts}")

        try:
            await self.runner.run(job, token)
        except JobCancelledError as e:
            logger.info(f"Job {job.id}: cancelled at {job.status.value}.")
            await self._finish_failed(job, e)
            return job
        except TransientError as e:
            if job.status == JobStatus.COMPLETED:
                await self._finish_completed(job)
                return job
            if attempt < self.max_attempts and not (token.cancelled or job.cancel_requested):
                logger.warning(f"Job {job.id}: transient error ({e.reason}): {e}. Handing back for retry.")
                job.reset_for_retry()
                try:
                    await self.store.update_job(job)
                except StorageError as store_error:
                    logger.warning(f"Job {job.id}: could not persist retry state: {store_error}")
                await self.broadcaster.publish(job)
                raise
            logger.error(f"Job {job.id}: failed after {attempt} attempts: {e}", exc_info=True)
            await self._finish_failed(job, e)
            return job
        except SoftTimeLimitExceeded:
            logger.error(f"Job {job.id}: soft time limit exceeded at {job.status.value}.", exc_info=True)
            await self._finish_failed(job, JobTimeoutError("Research task exceeded its time limit"))
            return job
        except ResearchError as e:
            logger.error(f"Job {job.id}: failed ({e.reason}): {e}", exc_info=True)
            await self._finish_failed(job, e)
            return job
        except Exception as e:
            logger.error(f"Job {job.id}: unexpected error: {e}", exc_info=True)
            await self._finish_failed(job, ResearchError(f"Internal error: {e}"))
            return job

        if job.status != JobStatus.COMPLETED:
            await self._finish_failed(job, ResearchError("Pipeline finished without completing the job"))
            return job
        await self._finish_completed(job)
        return job

    async def _persist_final(self, job: ResearchJob) -> bool:
        """Writes a terminal job, retrying with a doubling delay."""
        for attempt in range(1, self.final_write_attempts + 1):
            try:
                await self.store.update_job(job)
                return True
            except StorageError as e:
                if attempt == self.final_write_attempts:
                    logger.critical(f"Job {job.id}: could not persist final status {job.status.value}: {e}")
                    return False
                delay = self.final_write_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"Job {job.id}: writing final status failed ({e}), retrying in {delay:.1f}s.")
                await self.sleep(delay)
        return False

    async def _finish_failed(self, job: ResearchJob, error: ResearchError):
        if job.is_terminal:
            logger.warning(f"Job {job.id}: already {job.status.value}, ignoring {error.reason}: {error}")
            return
        job.mark_failed(error.reason, str(error))
        await self._persist_final(job)
        await self.broadcaster.publish(job)
        if self.notifier is not None:
            await self.notifier.notify(job)

    async def _finish_completed(self, job: ResearchJob):
        logger.info(f"Job {job.id}: completed after {job.attempts} attempt(s).")
        if self.notifier is not None:
            await self.notifier.notify(job)


async def fail_stalled_jobs(
    store: JobStore,
    threshold_seconds: float,
    broadcaster: Optional[StatusBroadcaster] = None,
) -> List[str]:
    """Marks running jobs that stopped heartbeating as failed."""
    failed: List[str] = []
    for job in await store.scan_stuck_jobs(threshold_seconds):
        job.mark_failed(STALLED, f"No heartbeat for more than {threshold_seconds}s")
        await store.update_job(job)
        if broadcaster is not None:
            await broadcaster.publish(job)
        failed.append(job.id)
        logger.warning(f"Watchdog: job {job.id} marked failed as stalled.")
    return failed
