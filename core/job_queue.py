"""
Job queue — in-process worker pool delivering sync jobs with retries.

``SyncJobQueue`` holds an ``asyncio.Queue`` drained by a fixed number of
worker tasks.  The handler is told the attempt number and the ceiling;
when it raises a retryable error and attempts remain, the job goes back
on the queue after an exponential delay.  Non-retryable errors end the
job immediately.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from config.settings import config
from connectors.errors import EspError, RateLimited, is_retryable
from utils.schemas import SyncJob

logger = logging.getLogger(__name__)

# (job, attempt_number, max_attempts) -> anything
JobHandler = Callable[[SyncJob, int, int], Awaitable[Any]]


class RetryPolicy:
    """Bounded exponential backoff: ``base * 2**(attempt - 1)``."""

    def __init__(self, max_attempts: Optional[int] = None, base_delay: Optional[float] = None):
        self.max_attempts = max_attempts if max_attempts is not None else config.sync_max_attempts
        self.base_delay = base_delay if base_delay is not None else config.sync_backoff_base_seconds

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        delay = self.base_delay * (2 ** (attempt - 1))
        if isinstance(exc, RateLimited) and exc.retry_after:
            delay = max(delay, exc.retry_after)
        return delay

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return is_retryable(exc) and attempt < self.max_attempts


class SyncJobQueue:
    def __init__(
        self,
        handler: JobHandler,
        *,
        workers: Optional[int] = None,
        policy: Optional[RetryPolicy] = None,
        state_retention: Optional[int] = None,
    ):
        self._handler = handler
        self._worker_count = workers or config.sync_worker_count
        self.policy = policy or RetryPolicy()
        self._queue: asyncio.Queue[SyncJob] = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        # live jobs only; finished states move to the bounded _finished
        self._states: Dict[str, str] = {}
        self._finished: "OrderedDict[str, str]" = OrderedDict()
        self._retention = state_retention if state_retention is not None else config.job_state_retention

    # ── lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"sync-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Sync job queue started with %d workers", self._worker_count)

    async def stop(self) -> None:
        """Cancel workers and pending retry timers.  Jobs still queued are dropped."""
        tasks = [*self._workers, *self._timers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._timers.clear()
        logger.info("Sync job queue stopped")

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ── producer side ───────────────────────────────────────────────────

    def enqueue(self, connection_id: uuid.UUID | str, reason: str = "manual") -> str:
        """Queue a sync for *connection_id*; returns the job id immediately."""
        job = SyncJob(connection_id=uuid.UUID(str(connection_id)), reason=reason)
        self._outstanding += 1
        self._idle.clear()
        self._states[job.job_id] = "queued"
        self._queue.put_nowait(job)
        logger.info("Queued sync job %s for connection %s (%s)", job.job_id, job.connection_id, reason)
        return job.job_id

    def job_state(self, job_id: str) -> Optional[str]:
        """
        queued / running / retrying / succeeded / failed, or None if unknown.

        Only the most recent ``state_retention`` finished jobs are remembered.
        """
        state = self._states.get(job_id)
        if state is None:
            state = self._finished.get(job_id)
        return state

    async def join(self) -> None:
        """Wait until every queued job has succeeded or run out of attempts."""
        await self._idle.wait()

    # ── consumer side ───────────────────────────────────────────────────

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            finally:
                self._queue.task_done()

    async def _process(self, job: SyncJob) -> None:
        attempt = job.attempts_made + 1
        self._states[job.job_id] = "running"
        try:
            await self._handler(job, attempt, self.policy.max_attempts)
        except Exception as exc:
            job.attempts_made = attempt
            if self.policy.should_retry(exc, attempt):
                delay = self.policy.delay_for(attempt, exc)
                logger.warning(
                    "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
                    job.job_id, attempt, self.policy.max_attempts, type(exc).__name__, delay,
                )
                self._states[job.job_id] = "retrying"
                timer = asyncio.create_task(self._requeue_after(job, delay))
                self._timers.add(timer)
                timer.add_done_callback(self._timers.discard)
                return
            logger.error(
                "Job %s for connection %s failed after %d attempt(s): %s",
                job.job_id, job.connection_id, attempt, exc,
                exc_info=not isinstance(exc, EspError),
            )
            self._complete(job, "failed")
            return

        job.attempts_made = attempt
        self._complete(job, "succeeded")

    async def _requeue_after(self, job: SyncJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._states[job.job_id] = "queued"
        self._queue.put_nowait(job)

    def _complete(self, job: SyncJob, state: str) -> None:
        self._states.pop(job.job_id, None)
        self._finished[job.job_id] = state
        while len(self._finished) > self._retention:
            self._finished.popitem(last=False)
        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()
