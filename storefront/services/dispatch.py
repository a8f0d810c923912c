"""
Task dispatch

The settlement core hands deferred work (webhook processing, queued refunds,
order emails) to a TaskDispatcher. Its responsibility ends at a successful
enqueue.

- ArqTaskDispatcher: Redis-backed arq queue, consumed by the worker in
  storefront.jobs.job_queue.
- InlineTaskDispatcher: runs the job as a background asyncio task in this
  process (local runs, tests, or deployments without a worker). arq.Retry is
  honoured the way the worker honours it.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from arq import Retry

logger = logging.getLogger(__name__)

# arq job signature: job(ctx, **kwargs)
JobFunction = Callable[..., Awaitable[Any]]


class TaskDispatcher(ABC):

    @abstractmethod
    async def enqueue(self, job_name: str, **kwargs) -> None:
        """Queue a job. Raises if the job could not be queued."""
        pass

    async def close(self) -> None:
        pass


class InlineTaskDispatcher(TaskDispatcher):
    """
    Runs arq job functions in the current event loop.

    Each attempt gets its own ctx with job_try set. A job raising arq.Retry
    runs again after the requested defer, up to max_tries attempts.
    """

    def __init__(self, max_tries: int = 3):
        self.max_tries = max_tries
        self._jobs: Dict[str, Tuple[JobFunction, Dict[str, Any]]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def register(self, job_name: str, job: JobFunction, ctx: Optional[Dict[str, Any]] = None) -> None:
        self._jobs[job_name] = (job, dict(ctx or {}))

    async def enqueue(self, job_name: str, **kwargs) -> None:
        if job_name not in self._jobs:
            raise LookupError(f"No inline handler registered for job {job_name}")

        job, ctx = self._jobs[job_name]
        task = asyncio.create_task(self._run(job_name, job, ctx, kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job_name: str, job: JobFunction, ctx: Dict[str, Any], kwargs: Dict[str, Any]) -> None:
        job_try = 1
        while True:
            try:
                await job({**ctx, "job_try": job_try}, **kwargs)
                return
            except Retry as e:
                if job_try >= self.max_tries:
                    logger.error(f"Inline job {job_name} gave up after {job_try} attempts")
                    return
                delay = (e.defer_score or 0) / 1000
                logger.info(f"Inline job {job_name} attempt {job_try + 1} in {delay:.0f}s")
                await asyncio.sleep(delay)
                job_try += 1
            except Exception as e:
                logger.error(f"Inline job {job_name} failed: {e}", exc_info=True)
                return

    async def drain(self) -> None:
        """Wait for every job started so far, retries included."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()


class ArqTaskDispatcher(TaskDispatcher):

    def __init__(self, pool):
        self._pool = pool

    @classmethod
    async def connect(cls, redis_url: str) -> "ArqTaskDispatcher":
        from arq import create_pool
        from storefront.jobs.job_queue import parse_redis_url

        return cls(await create_pool(parse_redis_url(redis_url)))

    async def enqueue(self, job_name: str, **kwargs) -> None:
        job = await self._pool.enqueue_job(job_name, **kwargs)
        logger.debug(f"Queued {job_name} ({job.job_id if job else 'duplicate'})")

    async def close(self) -> None:
        await self._pool.aclose()
