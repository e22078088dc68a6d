import time
import uuid
import asyncio
import logging
from typing import Callable, Awaitable, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from research_app.exceptions import StorageError

logger = logging.getLogger(__name__)

# Prunes starts older than the window, then either records a new start ("-1") or
# returns the seconds until the oldest start leaves the window.
RESERVE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
if redis.call('ZCARD', key) < limit then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('PEXPIRE', key, math.ceil(window * 1000))
    return '-1'
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return tostring(math.max(window - (now - tonumber(oldest[2])), 0))
"""


class StartRateLimiter:
    """
    Caps how many jobs may start within a rolling time window. This version keeps
    its timestamps in process memory behind an asyncio lock; RedisStartRateLimiter
    shares the window between every worker process.

    Args:
        max_starts: The maximum number of starts allowed within the window.
        window_seconds: The rolling window in seconds.
        clock: Time source, injectable for tests.
        sleep: Coroutine used to wait for a free slot, injectable for tests.
    """
    def __init__(
        self,
        max_starts: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_starts < 1:
            raise ValueError("max_starts must be at least 1")
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self.clock = clock
        self.sleep = sleep
        self._starts: List[float] = []
        self._lock = asyncio.Lock()

    def _prune(self, now: float):
        # Filter out starts older than the window
        self._starts = [t for t in self._starts if now - t < self.window_seconds]

    async def _reserve(self) -> Optional[float]:
        """Records a start and returns None, or returns the seconds until a slot frees up."""
        async with self._lock:
            now = self.clock()
            self._prune(now)
            if len(self._starts) < self.max_starts:
                self._starts.append(now)
                return None
            return max(self.window_seconds - (now - self._starts[0]), 0.0)

    async def acquire(self, abort: Optional[Callable[[], Awaitable[bool]]] = None) -> bool:
        """
        Waits until a slot is free and takes it. `abort` is awaited before every
        attempt; once it returns True the wait ends without taking a slot and
        False is returned.
        """
        while True:
            if abort is not None and await abort():
                return False
            delay = await self._reserve()
            if delay is None:
                return True
            logger.info(f"Job start rate limit reached ({self.max_starts}/{self.window_seconds}s). Waiting {delay:.2f}s.")
            await self.sleep(delay)

    async def close(self):
        pass


class RedisStartRateLimiter(StartRateLimiter):
    """
    Start limiter whose window lives in a Redis sorted set, so the cap holds across
    every Celery worker process. The prune/count/add step runs as one Lua script.
    """
    def __init__(
        self,
        max_starts: int,
        window_seconds: float,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        key: str = "research_start_limiter",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(max_starts, window_seconds, clock=clock, sleep=sleep)
        if client is None and not redis_url:
            raise ValueError("Either redis_url or client is required.")
        self.key = key
        self._redis_client = client or redis.from_url(redis_url, decode_responses=True)
        self._reserve_script = self._redis_client.register_script(RESERVE_SCRIPT)

    async def _reserve(self) -> Optional[float]:
        now = self.clock()
        try:
            result = await self._reserve_script(
                keys=[self.key],
                args=[now, self.window_seconds, self.max_starts, f"{now}:{uuid.uuid4().hex}"],
            )
        except RedisError as e:
            logger.error(f"Start rate limiter unavailable: {e}")
            raise StorageError("Start rate limiter unavailable") from e
        delay = float(result)
        return None if delay < 0 else delay

    async def close(self):
        await self._redis_client.aclose()
