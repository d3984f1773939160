"""Job queue and worker pool."""
from .models import Backoff, Job, JobDefinition, JobEvent, JobEventKind, JobState
from .payloads import (
    HealthCheckPayload,
    InterestAccrualPayload,
    JobPayload,
    LiquidationPayload,
    NotificationPayload,
    PriceRefreshPayload,
)
from .queue import JobQueue
from .worker import WorkerPool

__all__ = [
    "Backoff",
    "HealthCheckPayload",
    "InterestAccrualPayload",
    "Job",
    "JobDefinition",
    "JobEvent",
    "JobEventKind",
    "JobPayload",
    "JobQueue",
    "JobState",
    "LiquidationPayload",
    "NotificationPayload",
    "PriceRefreshPayload",
    "WorkerPool",
]
