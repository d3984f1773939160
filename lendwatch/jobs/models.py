"""Job records, job-type definitions and lifecycle events."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from .payloads import JobPayload


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class JobEventKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


@dataclass(frozen=True)
class Backoff:
    """Delay between attempts: ``fixed`` or doubling ``exponential``."""

    kind: str = "exponential"
    delay: float = 2.0

    def delay_for(self, attempts_made: int) -> float:
        if self.kind == "fixed":
            return self.delay
        return self.delay * 2 ** max(attempts_made - 1, 0)


Handler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class JobDefinition:
    """Per-type policy: handler, concurrency, retries, backoff and lease.

    ``payload_type`` pins the payload variant accepted by ``enqueue`` so a
    job cannot be created with another type's payload.
    """

    name: str
    handler: Handler
    payload_type: type
    concurrency: int = 1
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    lease_seconds: float = 60.0
    priority: int = 10


@dataclass(eq=False)
class Job:
    """One unit of work. Owned and mutated by the queue only.

    Lower ``priority`` values are dispatched first.
    """

    id: str
    name: str
    payload: JobPayload
    priority: int
    max_attempts: int
    lease_seconds: float
    seq: int
    available_at: float
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    lease_token: int = 0
    lease_expires_at: float | None = None
    result: Any = None
    failed_reason: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)


@dataclass(frozen=True)
class JobEvent:
    kind: JobEventKind
    job_id: str
    name: str
    attempts_made: int
    error: str = ""
    result: Any = None
