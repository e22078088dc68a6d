import asyncio
import logging
from collections import defaultdict
from typing import Dict, Set, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from research_app.models.job import ResearchJob, TERMINAL_STATUSES
from research_app.models.schemas import JobStatusResponse

logger = logging.getLogger(__name__)


def status_snapshot(job: ResearchJob) -> JobStatusResponse:
    return JobStatusResponse(
        id=job.id,
        status=job.status,
        progress=job.progress,
        error=job.error,
        error_message=job.error_message,
    )


class Subscription:
    """
    Ordered stream of status snapshots for one job. Iteration ends after a
    terminal snapshot has been delivered.
    """
    def __init__(self, broadcaster: "StatusBroadcaster", job_id: str):
        self.job_id = job_id
        self._broadcaster = broadcaster
        self._queue: "asyncio.Queue[JobStatusResponse]" = asyncio.Queue()
        self._finished = False

    def _push(self, snapshot: JobStatusResponse):
        self._queue.put_nowait(snapshot)

    async def _next_snapshot(self) -> JobStatusResponse:
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> JobStatusResponse:
        if self._finished:
            raise StopAsyncIteration
        snapshot = await self._next_snapshot()
        if snapshot.status in TERMINAL_STATUSES:
            self._finished = True
        return snapshot

    async def close(self):
        self._broadcaster._unsubscribe(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class StatusBroadcaster:
    """
    In-process fan-out of job status changes. A snapshot is only published when the
    job's status or progress differs from the last one published for that job.
    """
    def __init__(self):
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self._last: Dict[str, Tuple] = {}

    async def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(self, job_id)
        self._subscribers[job_id].add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription):
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.job_id]

    def _changed(self, job: ResearchJob) -> Optional[JobStatusResponse]:
        key = (job.status, job.progress, job.error)
        if self._last.get(job.id) == key:
            return None
        if job.is_terminal:
            self._last.pop(job.id, None)
        else:
            self._last[job.id] = key
        return status_snapshot(job)

    async def _deliver(self, snapshot: JobStatusResponse):
        for subscription in list(self._subscribers.get(snapshot.id, ())):
            subscription._push(snapshot)

    async def publish(self, job: ResearchJob) -> Optional[JobStatusResponse]:
        snapshot = self._changed(job)
        if snapshot is None:
            return None
        await self._deliver(snapshot)
        logger.debug(f"Job {job.id}: published {job.status.value} at {job.progress}%")
        return snapshot

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    async def close(self):
        pass


class RedisSubscription(Subscription):
    """
    Subscription fed by a Redis pub/sub channel. Messages that are not valid
    snapshots are skipped.
    """
    def __init__(self, pubsub, job_id: str, poll_timeout: float = 1.0):
        self.job_id = job_id
        self._pubsub = pubsub
        self._poll_timeout = poll_timeout
        self._finished = False

    async def _next_snapshot(self) -> JobStatusResponse:
        while True:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
            if message is None or message.get("type") != "message":
                continue
            try:
                return JobStatusResponse.model_validate_json(message["data"])
            except ValueError as e:
                logger.warning(f"Job {self.job_id}: ignoring malformed status message: {e}")

    async def close(self):
        try:
            await self._pubsub.unsubscribe()
        except RedisError as e:
            logger.warning(f"Job {self.job_id}: failed to unsubscribe from status channel: {e}")
        await self._pubsub.aclose()


class RedisStatusBroadcaster(StatusBroadcaster):
    """
    Publishes status snapshots on a per-job Redis channel so that every API process
    sees the changes made by Celery workers. Publishing is best effort: the job
    store stays the source of truth.
    """
    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        super().__init__()
        if client is None and not redis_url:
            raise ValueError("Either redis_url or client is required.")
        self._redis_client = client or redis.from_url(redis_url, decode_responses=True)

    @staticmethod
    def channel(job_id: str) -> str:
        return f"research_status:{job_id}"

    async def subscribe(self, job_id: str) -> RedisSubscription:
        pubsub = self._redis_client.pubsub()
        await pubsub.subscribe(self.channel(job_id))
        return RedisSubscription(pubsub, job_id)

    async def _deliver(self, snapshot: JobStatusResponse):
        try:
            await self._redis_client.publish(self.channel(snapshot.id), snapshot.model_dump_json())
        except RedisError as e:
            logger.warning(f"Job {snapshot.id}: failed to publish status {snapshot.status.value}: {e}")

    async def close(self):
        await self._redis_client.aclose()
