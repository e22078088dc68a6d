import logging
from collections import Counter
from typing import Optional, List

from kombu.exceptions import OperationalError

from research_app.background.celery_worker import RESEARCH_TASK
from research_app.exceptions import ValidationError, JobCancelledError, QueueUnavailableError
from research_app.models.job import ResearchJob, ResearchOptions, JobStatus
from research_app.models.schemas import JobStatusResponse, QueueStatsResponse
from research_app.services.events import StatusBroadcaster, status_snapshot
from research_app.services.job_store import JobStore
from research_app.services.notifier import WebhookNotifier
from research_app.services.templates import TemplateRegistry

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (JobStatus.SEARCHING, JobStatus.CRAWLING, JobStatus.ANALYZING, JobStatus.GENERATING)


class CancellationToken:
    """
    Cooperative cancellation signal for one job. Setting it never interrupts a
    running call; the pipeline observes it when it enters a phase. A token built
    with a store also reads the job's cancellation flag, which the API sets from
    its own process.
    """
    def __init__(self, store: Optional[JobStore] = None, job_id: Optional[str] = None):
        self.store = store
        self.job_id = job_id
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def check(self) -> bool:
        if not self._cancelled and self.store is not None and self.job_id is not None:
            self._cancelled = await self.store.is_cancel_requested(self.job_id)
        return self._cancelled

    async def raise_if_cancelled(self, job: Optional[ResearchJob] = None):
        if await self.check() or (job is not None and job.cancel_requested):
            if job is not None:
                job.cancel_requested = True
            raise JobCancelledError("Job cancelled by request")


class ResearchQueue:
    """
    The API side of the job queue.

    Submissions are validated, stored as pending and handed to Celery by task name,
    with the job id as the task id. The broker holds waiting jobs until a worker
    (see research_app.background) takes them, so nothing is lost when the API
    restarts. Status reads go to the job store.
    """
    def __init__(
        self,
        store: JobStore,
        templates: TemplateRegistry,
        celery_app,
        broadcaster: Optional[StatusBroadcaster] = None,
        notifier: Optional[WebhookNotifier] = None,
        watchdog_threshold_seconds: float = 600,
    ):
        self.store = store
        self.templates = templates
        self.celery_app = celery_app
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.notifier = notifier
        self.watchdog_threshold_seconds = watchdog_threshold_seconds

    async def submit(self, query: str, template_id: str, options: Optional[ResearchOptions] = None) -> ResearchJob:
        """
        Validates and enqueues a new job. Invalid submissions raise ValidationError and
        leave no job record behind.
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("Query must not be empty")
        if self.templates.get(template_id) is None:
            raise ValidationError(f"Unknown template '{template_id}'")

        job = ResearchJob(query=query, template_id=template_id, options=options or ResearchOptions())
        await self.store.create_job(job)
        await self.enqueue(job)
        return job

    async def enqueue(self, job: ResearchJob) -> str:
        try:
            self.celery_app.send_task(RESEARCH_TASK, args=[job.id], task_id=job.id)
        except OperationalError as e:
            logger.error(f"Job {job.id}: could not reach the task broker: {e}", exc_info=True)
            error = QueueUnavailableError(f"Task broker unavailable: {e}")
            job.mark_failed(error.reason, str(error))
            await self.store.update_job(job)
            raise error from e
        await self.broadcaster.publish(job)
        logger.info(f"Job {job.id} enqueued.")
        return job.id

    async def get_job(self, job_id: str) -> Optional[ResearchJob]:
        return await self.store.get_job(job_id)

    async def get_status(self, job_id: str) -> Optional[JobStatusResponse]:
        job = await self.get_job(job_id)
        return status_snapshot(job) if job else None

    async def request_cancel(self, job_id: str) -> bool:
        """
        Returns True only if the job was waiting or active. Waiting jobs are revoked
        and fail at once; active jobs stop at their next phase boundary.
        """
        job = await self.store.get_job(job_id)
        if job is None or job.is_terminal:
            return False

        await self.store.request_cancel(job_id)
        if job.status != JobStatus.PENDING:
            logger.info(f"Job {job_id}: cancellation requested while {job.status.value}.")
            return True

        try:
            self.celery_app.control.revoke(job_id)
        except OperationalError as e:
            # The worker still sees the flag and the failed status when it picks the job up.
            logger.warning(f"Job {job_id}: could not revoke the waiting task: {e}")
        job.cancel_requested = True
        job.mark_failed(JobCancelledError.reason, "Job cancelled before it started")
        await self.store.update_job(job)
        await self.broadcaster.publish(job)
        if self.notifier is not None:
            await self.notifier.notify(job)
        logger.info(f"Job {job_id}: cancelled while waiting.")
        return True

    async def stats(self) -> QueueStatsResponse:
        counts = Counter(job.status for job in await self.store.list_jobs())
        return QueueStatsResponse(
            waiting=counts[JobStatus.PENDING],
            active=sum(counts[status] for status in ACTIVE_STATUSES),
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
        )

    async def stuck_jobs(self) -> List[ResearchJob]:
        """Running jobs without a heartbeat within the watchdog threshold."""
        return await self.store.scan_stuck_jobs(self.watchdog_threshold_seconds)
