import json
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Optional, List, Any, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from research_app.exceptions import StorageError
from research_app.models.job import ResearchJob, JobStatus, utcnow

logger = logging.getLogger(__name__)

CANCEL_FLAG_TTL_SECONDS = 86400


class JobStore(ABC):
    """
    Persistence for research jobs plus per-phase crash-recovery checkpoints.
    Every write refreshes the job's heartbeat.
    """

    @abstractmethod
    async def create_job(self, job: ResearchJob):
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[ResearchJob]:
        pass

    @abstractmethod
    async def update_job(self, job: ResearchJob):
        pass

    @abstractmethod
    async def list_jobs(self) -> List[ResearchJob]:
        pass

    @abstractmethod
    async def persist_checkpoint(self, job_id: str, phase: str, state: Dict[str, Any]):
        """Stores the intermediate state reached at the end of a phase."""
        pass

    @abstractmethod
    async def load_checkpoint(self, job_id: str) -> Dict[str, Any]:
        """Returns {phase: state} for every checkpoint saved for the job."""
        pass

    @abstractmethod
    async def clear_checkpoint(self, job_id: str):
        pass

    @abstractmethod
    async def request_cancel(self, job_id: str):
        """Raises the cancellation flag that a running worker checks at phase boundaries."""
        pass

    @abstractmethod
    async def is_cancel_requested(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_all_jobs(self):
        pass

    async def scan_stuck_jobs(self, threshold_seconds: int) -> List[ResearchJob]:
        """
        Returns running jobs whose last_heartbeat is older than the given threshold.
        Pending jobs are skipped: they wait in the broker and have no worker yet.
        """
        cutoff = utcnow() - timedelta(seconds=threshold_seconds)
        stuck_jobs: List[ResearchJob] = []
        for job in await self.list_jobs():
            if job.is_terminal or job.status == JobStatus.PENDING:
                continue
            if job.last_heartbeat < cutoff:
                stuck_jobs.append(job)
                logger.warning(
                    f"Job {job.id} detected as stuck. "
                    f"Status: {job.status.value}, Last Heartbeat: {job.last_heartbeat} (older than {threshold_seconds}s)"
                )
        return stuck_jobs

    async def close(self):
        pass


class RedisJobStore(JobStore):
    """
    Stores each ResearchJob as a JSON string in Redis, with its checkpoints in a hash
    keyed by phase name.
    """
    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and not redis_url:
            raise ValueError("Either redis_url or client is required.")
        self._redis_client = client or redis.from_url(redis_url, decode_responses=True)

    def _get_job_key(self, job_id: str) -> str:
        return f"research_job:{job_id}"

    def _get_checkpoint_key(self, job_id: str) -> str:
        return f"research_checkpoint:{job_id}"

    def _get_cancel_key(self, job_id: str) -> str:
        return f"research_cancel:{job_id}"

    async def ping(self):
        try:
            await self._redis_client.ping()
            logger.info("Connected to Redis successfully for JobStore.")
        except RedisError as e:
            logger.error(f"Could not connect to Redis for JobStore: {e}")
            raise StorageError("Failed to connect to Redis") from e

    async def create_job(self, job: ResearchJob):
        job.last_heartbeat = utcnow() # Set heartbeat on creation
        try:
            await self._redis_client.set(self._get_job_key(job.id), job.model_dump_json())
            logger.info(f"Job {job.id} created and stored in Redis.")
        except RedisError as e:
            logger.error(f"Failed to create job {job.id} in Redis: {e}")
            raise StorageError(f"Failed to create job {job.id}") from e

    async def get_job(self, job_id: str) -> Optional[ResearchJob]:
        try:
            job_json = await self._redis_client.get(self._get_job_key(job_id))
        except RedisError as e:
            logger.error(f"Failed to retrieve job {job_id} from Redis: {e}")
            raise StorageError(f"Failed to retrieve job {job_id}") from e
        if job_json:
            return ResearchJob.model_validate_json(job_json)
        return None

    async def update_job(self, job: ResearchJob):
        job.last_heartbeat = utcnow() # Update heartbeat on every update
        try:
            await self._redis_client.set(self._get_job_key(job.id), job.model_dump_json())
            logger.debug(f"Job {job.id} updated in Redis to status: {job.status.value} ({job.progress}%)")
        except RedisError as e:
            logger.error(f"Failed to update job {job.id} in Redis: {e}")
            raise StorageError(f"Failed to update job {job.id}") from e

    async def list_jobs(self) -> List[ResearchJob]:
        jobs: List[ResearchJob] = []
        try:
            async for key in self._redis_client.scan_iter(self._get_job_key("*")):
                job = await self.get_job(key.split(":", 1)[-1])
                if job:
                    jobs.append(job)
        except RedisError as e:
            logger.error(f"Failed to retrieve all jobs from Redis: {e}")
            raise StorageError("Failed to list jobs") from e
        return jobs

    async def persist_checkpoint(self, job_id: str, phase: str, state: Dict[str, Any]):
        try:
            await self._redis_client.hset(self._get_checkpoint_key(job_id), phase, json.dumps(state, default=str))
            logger.debug(f"Job {job_id}: checkpoint '{phase}' saved.")
        except RedisError as e:
            logger.error(f"Failed to save checkpoint '{phase}' for job {job_id}: {e}")
            raise StorageError(f"Failed to save checkpoint for job {job_id}") from e

    async def load_checkpoint(self, job_id: str) -> Dict[str, Any]:
        try:
            raw = await self._redis_client.hgetall(self._get_checkpoint_key(job_id))
        except RedisError as e:
            logger.error(f"Failed to load checkpoint for job {job_id}: {e}")
            raise StorageError(f"Failed to load checkpoint for job {job_id}") from e
        return {phase: json.loads(value) for phase, value in raw.items()}

    async def clear_checkpoint(self, job_id: str):
        try:
            await self._redis_client.delete(self._get_checkpoint_key(job_id))
        except RedisError as e:
            raise StorageError(f"Failed to clear checkpoint for job {job_id}") from e

    async def request_cancel(self, job_id: str):
        try:
            await self._redis_client.set(self._get_cancel_key(job_id), "1", ex=CANCEL_FLAG_TTL_SECONDS)
            logger.info(f"Job {job_id}: cancellation flag set.")
        except RedisError as e:
            logger.error(f"Failed to set cancellation flag for job {job_id}: {e}")
            raise StorageError(f"Failed to request cancellation of job {job_id}") from e

    async def is_cancel_requested(self, job_id: str) -> bool:
        try:
            return bool(await self._redis_client.exists(self._get_cancel_key(job_id)))
        except RedisError as e:
            raise StorageError(f"Failed to read cancellation flag for job {job_id}") from e

    async def delete_all_jobs(self):
        """Deletes all jobs and checkpoints from Redis. Primarily for testing."""
        try:
            keys = [key async for key in self._redis_client.scan_iter(self._get_job_key("*"))]
            keys += [key async for key in self._redis_client.scan_iter(self._get_checkpoint_key("*"))]
            keys += [key async for key in self._redis_client.scan_iter(self._get_cancel_key("*"))]
            if keys:
                await self._redis_client.delete(*keys)
            logger.info(f"Deleted {len(keys)} job keys from Redis.")
        except RedisError as e:
            logger.error(f"Failed to delete jobs from Redis: {e}")
            raise StorageError("Failed to delete jobs") from e

    async def close(self):
        await self._redis_client.aclose()


class InMemoryJobStore(JobStore):
    """
    Process-local store used by the test suite. Jobs are kept as JSON so
    callers never share mutable state with the store.
    """
    def __init__(self):
        self._jobs: Dict[str, str] = {}
        self._checkpoints: Dict[str, Dict[str, str]] = {}
        self._cancelled: Set[str] = set()

    async def create_job(self, job: ResearchJob):
        job.last_heartbeat = utcnow()
        self._jobs[job.id] = job.model_dump_json()
        logger.info(f"Job {job.id} created in memory.")

    async def get_job(self, job_id: str) -> Optional[ResearchJob]:
        job_json = self._jobs.get(job_id)
        return ResearchJob.model_validate_json(job_json) if job_json else None

    async def update_job(self, job: ResearchJob):
        job.last_heartbeat = utcnow()
        self._jobs[job.id] = job.model_dump_json()

    async def list_jobs(self) -> List[ResearchJob]:
        return [ResearchJob.model_validate_json(j) for j in self._jobs.values()]

    async def persist_checkpoint(self, job_id: str, phase: str, state: Dict[str, Any]):
        self._checkpoints.setdefault(job_id, {})[phase] = json.dumps(state, default=str)

    async def load_checkpoint(self, job_id: str) -> Dict[str, Any]:
        return {phase: json.loads(v) for phase, v in self._checkpoints.get(job_id, {}).items()}

    async def clear_checkpoint(self, job_id: str):
        self._checkpoints.pop(job_id, None)

    async def request_cancel(self, job_id: str):
        self._cancelled.add(job_id)

    async def is_cancel_requested(self, job_id: str) -> bool:
        return job_id in self._cancelled

    async def delete_all_jobs(self):
        self._jobs.clear()
        self._checkpoints.clear()
        self._cancelled.clear()
