"""Fixed-size asyncio worker pool pulling from a ``JobQueue``."""
from __future__ import annotations

import asyncio
import logging

from .models import Job
from .queue import JobQueue

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs job handlers on ``size`` workers plus one stall monitor.

    Shutdown drains: workers stop taking new jobs, in-flight handlers get
    up to ``grace_seconds`` to finish, and whatever is left is cancelled.
    A cancelled job keeps its lease and is reclaimed as stalled by the next
    process that shares the queue.
    """

    def __init__(
        self,
        queue: JobQueue,
        size: int = 4,
        stall_check_seconds: float = 5.0,
        poll_seconds: float = 1.0,
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self._queue = queue
        self.size = size
        self._stall_check_seconds = stall_check_seconds
        self._poll_seconds = poll_seconds
        self._workers: list[asyncio.Task] = []
        self._monitor: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._busy = 0

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._stopping.is_set()

    @property
    def busy(self) -> int:
        return self._busy

    def start(self) -> None:
        if self._workers:
            logger.warning("Worker pool already running")
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"lendwatch-worker-{i}")
            for i in range(self.size)
        ]
        self._monitor = asyncio.create_task(self._stall_monitor(), name="lendwatch-stalls")
        logger.info("Worker pool started with %d workers", self.size)

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            job = await self._queue.next_job(timeout=self._poll_seconds)
            if job is None:
                if self._queue.closed:
                    break
                continue
            await self.run_job(job)
        logger.debug("Worker %d exited", index)

    async def run_job(self, job: Job) -> None:
        """Execute one leased job and report the outcome to the queue."""
        definition = self._queue.definition(job.name)
        token = job.lease_token
        self._busy += 1
        logger.debug(
            "Running %s job %s (attempt %d/%d)",
            job.name,
            job.id,
            job.attempts_made,
            job.max_attempts,
        )
        try:
            result = await definition.handler(job.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("%s job %s failed: %s", job.name, job.id, e)
            await self._queue.fail(job, token, e)
        else:
            await self._queue.complete(job, token, result)
        finally:
            self._busy -= 1

    async def _stall_monitor(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self._stall_check_seconds
                )
            except asyncio.TimeoutError:
                await self._queue.reap_stalled()

    async def stop(self, grace_seconds: float = 30.0) -> None:
        """Stop taking jobs, let active ones finish, then cancel stragglers."""
        if not self._workers:
            return
        self._stopping.set()
        tasks = list(self._workers)
        if self._monitor is not None:
            tasks.append(self._monitor)

        done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d workers still running after %.0fs", len(pending), grace_seconds)
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("Worker exited with error: %s", task.exception())

        self._workers = []
        self._monitor = None
        logger.info("Worker pool stopped")
