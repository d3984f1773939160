"""In-process job queue with per-type policies and repeatable timers.

Job types are registered with a ``JobDefinition``. Waiting jobs are
dispatched by priority, then FIFO, to whichever worker asks next, as long
as fewer than ``concurrency`` jobs of the same type are active. A
dispatched job holds a lease; the worker pool's stall monitor calls
``reap_stalled`` to hand expired leases back to the queue.

Repeatable timers run on an APScheduler ``AsyncIOScheduler``. A timer only
enqueues; it never executes the handler itself.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
import uuid
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import UnrecoverableJobError
from .models import Job, JobDefinition, JobEvent, JobEventKind, JobState
from .payloads import JobPayload

logger = logging.getLogger(__name__)

Listener = Callable[[JobEvent], Any]

# Finished jobs kept for inspection before the oldest are pruned.
MAX_FINISHED_JOBS = 1000


class JobQueue:
    """Shared queue between the scheduler, job handlers and the worker pool."""

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._clock = clock
        self._definitions: dict[str, JobDefinition] = {}
        self._jobs: dict[str, Job] = {}
        self._waiting: list[Job] = []
        self._active: dict[str, Job] = {}
        self._active_counts: Counter[str] = Counter()
        self._finished: deque[Job] = deque()
        self._listeners: list[Listener] = []
        self._cond = asyncio.Condition()
        self._seq = itertools.count()
        self._closed = False

    # ------------------------------------------------------------------
    # Job types
    # ------------------------------------------------------------------

    def register(self, definition: JobDefinition) -> None:
        if definition.concurrency < 1 or definition.attempts < 1:
            raise ValueError(
                f"Job type '{definition.name}' needs concurrency and attempts >= 1"
            )
        self._definitions[definition.name] = definition
        logger.debug(
            "Registered job type %s (concurrency=%d attempts=%d lease=%.0fs)",
            definition.name,
            definition.concurrency,
            definition.attempts,
            definition.lease_seconds,
        )

    def definition(self, name: str) -> JobDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise ValueError(f"Unknown job type '{name}'") from None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a lifecycle listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _emit(self, events: list[JobEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    result = listener(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error("Job event listener failed on %s: %s", event.kind.value, e)

    # ------------------------------------------------------------------
    # Enqueue / dispatch
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        name: str,
        payload: JobPayload,
        *,
        priority: int | None = None,
        attempts: int | None = None,
        delay: float = 0.0,
        job_id: str | None = None,
    ) -> Job:
        """Add a job. A ``job_id`` matching a waiting or active job is a no-op."""
        definition = self.definition(name)
        if not isinstance(payload, definition.payload_type):
            raise TypeError(
                f"Job type '{name}' expects {definition.payload_type.__name__}, "
                f"got {type(payload).__name__}"
            )
        if self._closed:
            raise RuntimeError("Job queue is closed")

        async with self._cond:
            if job_id is not None:
                existing = self._jobs.get(job_id)
                if existing is not None and not existing.is_finished:
                    logger.debug("Job %s already queued (%s)", job_id, existing.state.value)
                    return existing

            job = Job(
                id=job_id or uuid.uuid4().hex,
                name=name,
                payload=payload,
                priority=definition.priority if priority is None else priority,
                max_attempts=attempts or definition.attempts,
                lease_seconds=definition.lease_seconds,
                seq=next(self._seq),
                available_at=self._clock() + max(delay, 0.0),
            )
            self._jobs[job.id] = job
            self._waiting.append(job)
            self._cond.notify_all()

        logger.debug("Enqueued %s job %s (priority %d)", name, job.id, job.priority)
        return job

    def _pick_locked(self) -> tuple[Job | None, float | None]:
        """Return the next dispatchable job, or how long until one may be."""
        now = self._clock()
        best: Job | None = None
        next_ready: float | None = None
        for job in self._waiting:
            definition = self._definitions[job.name]
            if self._active_counts[job.name] >= definition.concurrency:
                continue
            if job.available_at > now:
                wait = job.available_at - now
                next_ready = wait if next_ready is None else min(next_ready, wait)
                continue
            if best is None or (job.priority, job.seq) < (best.priority, best.seq):
                best = job
        return best, next_ready

    async def next_job(self, timeout: float | None = None) -> Job | None:
        """Lease the next due job; ``None`` on timeout or once closed."""
        deadline = None if timeout is None else self._clock() + timeout
        async with self._cond:
            while True:
                if self._closed:
                    return None
                job, next_ready = self._pick_locked()
                if job is not None:
                    self._lease_locked(job)
                    return job

                wait = next_ready
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                try:
                    await asyncio.wait_for(self._cond.wait(), wait)
                except asyncio.TimeoutError:
                    pass

    def _lease_locked(self, job: Job) -> None:
        self._waiting.remove(job)
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.lease_token += 1
        job.lease_expires_at = self._clock() + job.lease_seconds
        self._active[job.id] = job
        self._active_counts[job.name] += 1

    def _release_locked(self, job: Job) -> None:
        self._active.pop(job.id, None)
        self._active_counts[job.name] -= 1
        job.lease_expires_at = None

    def _is_current(self, job: Job, token: int) -> bool:
        return job.state is JobState.ACTIVE and job.lease_token == token

    def _finish_locked(self, job: Job, state: JobState) -> None:
        job.state = state
        job.finished_at = datetime.now(timezone.utc)
        job.done.set()
        self._finished.append(job)
        while len(self._finished) > MAX_FINISHED_JOBS:
            old = self._finished.popleft()
            # The id may already belong to a newer job (repeat:<key>, liquidate:<id>).
            if self._jobs.get(old.id) is old:
                del self._jobs[old.id]

    async def complete(self, job: Job, token: int, result: Any = None) -> bool:
        """Mark a leased job completed. Stale leases are ignored."""
        async with self._cond:
            if not self._is_current(job, token):
                logger.warning(
                    "Discarding result of %s job %s: lease no longer held", job.name, job.id
                )
                return False
            self._release_locked(job)
            job.result = result
            self._finish_locked(job, JobState.COMPLETED)
            self._cond.notify_all()

        await self._emit(
            [JobEvent(JobEventKind.COMPLETED, job.id, job.name, job.attempts_made, result=result)]
        )
        return True

    async def fail(self, job: Job, token: int, error: BaseException) -> bool:
        """Record a failed attempt; retries after backoff while attempts remain."""
        definition = self._definitions[job.name]
        events: list[JobEvent] = []
        async with self._cond:
            if not self._is_current(job, token):
                logger.warning(
                    "Discarding failure of %s job %s: lease no longer held", job.name, job.id
                )
                return False
            self._release_locked(job)
            job.failed_reason = str(error) or type(error).__name__

            unrecoverable = isinstance(error, UnrecoverableJobError)
            if unrecoverable or job.attempts_made >= job.max_attempts:
                self._finish_locked(job, JobState.FAILED)
                events.append(
                    JobEvent(
                        JobEventKind.FAILED,
                        job.id,
                        job.name,
                        job.attempts_made,
                        error=job.failed_reason,
                    )
                )
            else:
                backoff = definition.backoff.delay_for(job.attempts_made)
                job.state = JobState.WAITING
                job.available_at = self._clock() + backoff
                self._waiting.append(job)
                logger.warning(
                    "%s job %s attempt %d/%d failed: %s (retry in %.1fs)",
                    job.name,
                    job.id,
                    job.attempts_made,
                    job.max_attempts,
                    job.failed_reason,
                    backoff,
                )
            self._cond.notify_all()

        await self._emit(events)
        return True

    async def reap_stalled(self) -> list[Job]:
        """Reclaim active jobs whose lease expired.

        The stalled attempt is presumed dead; a later completion from it is
        discarded because its lease token is no longer current.
        """
        now = self._clock()
        events: list[JobEvent] = []
        stalled: list[Job] = []
        async with self._cond:
            for job in list(self._active.values()):
                if job.lease_expires_at is None or job.lease_expires_at > now:
                    continue
                self._release_locked(job)
                job.lease_token += 1
                job.state = JobState.STALLED
                stalled.append(job)
                events.append(
                    JobEvent(JobEventKind.STALLED, job.id, job.name, job.attempts_made)
                )
                if job.attempts_made >= job.max_attempts:
                    job.failed_reason = "job stalled more than allowable limit"
                    self._finish_locked(job, JobState.FAILED)
                    events.append(
                        JobEvent(
                            JobEventKind.FAILED,
                            job.id,
                            job.name,
                            job.attempts_made,
                            error=job.failed_reason,
                        )
                    )
                else:
                    job.state = JobState.WAITING
                    job.available_at = now
                    self._waiting.append(job)
            if stalled:
                self._cond.notify_all()

        for job in stalled:
            logger.warning(
                "%s job %s stalled after lease of %.0fs", job.name, job.id, job.lease_seconds
            )
        await self._emit(events)
        return stalled

    # ------------------------------------------------------------------
    # Repeatable jobs
    # ------------------------------------------------------------------

    async def _fire_repeatable(self, key: str, name: str, payload: JobPayload) -> None:
        if self._closed:
            return
        await self.enqueue(name, payload, job_id=f"repeat:{key}")

    def register_repeatable(
        self,
        key: str,
        name: str,
        period_seconds: float,
        payload: JobPayload,
        *,
        run_immediately: bool = False,
    ) -> None:
        """Arm a fixed-interval timer under ``key``, replacing any previous one."""
        self.definition(name)
        if period_seconds <= 0:
            raise ValueError("period_seconds must be positive")

        self.remove_repeatable(key)
        options: dict[str, Any] = {}
        if run_immediately:
            options["next_run_time"] = datetime.now(timezone.utc)
        self._scheduler.add_job(
            self._fire_repeatable,
            IntervalTrigger(seconds=period_seconds, timezone=timezone.utc),
            id=key,
            name=key,
            kwargs={"key": key, "name": name, "payload": payload},
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **options,
        )
        logger.info("Repeatable %s armed: %s every %ss", key, name, period_seconds)

    def remove_repeatable(self, key: str) -> bool:
        try:
            self._scheduler.remove_job(key)
        except JobLookupError:
            return False
        logger.debug("Repeatable %s removed", key)
        return True

    def repeatable_keys(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def clear_repeatables(self) -> int:
        keys = self.repeatable_keys()
        for key in keys:
            self.remove_repeatable(key)
        return len(keys)

    # ------------------------------------------------------------------
    # Inspection and lifecycle
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def counts(self) -> dict[str, int]:
        counts = Counter(job.state.value for job in self._jobs.values())
        return {state.value: counts.get(state.value, 0) for state in JobState}

    async def wait_for(self, job_id: str, timeout: float | None = None) -> Job:
        job = self._jobs[job_id]
        await asyncio.wait_for(job.done.wait(), timeout)
        return job

    def start(self) -> None:
        """Start the repeatable timers. Needs a running event loop."""
        if not self._scheduler.running:
            self._scheduler.start()

    def stop_timers(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    async def close(self) -> None:
        """Stop timers and wake idle workers so they can exit."""
        self.stop_timers()
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed
