"""Repeatable job schedule."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config import HEALTH_CHECK, INTEREST_ACCRUAL, PRICE_REFRESH, SchedulerConfig
from ..jobs.payloads import (
    HealthCheckPayload,
    InterestAccrualPayload,
    JobPayload,
    PriceRefreshPayload,
)
from ..jobs.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepeatableSpec:
    key: str
    job_name: str
    period_seconds: float
    payload: JobPayload


def canonical_schedule(config: SchedulerConfig) -> tuple[RepeatableSpec, ...]:
    return (
        RepeatableSpec(
            "price-refresh", PRICE_REFRESH, config.price_refresh_seconds, PriceRefreshPayload()
        ),
        RepeatableSpec(
            "health-factor-update",
            HEALTH_CHECK,
            config.health_check_seconds,
            HealthCheckPayload(),
        ),
        RepeatableSpec(
            "interest-accrual",
            INTEREST_ACCRUAL,
            config.interest_accrual_seconds,
            InterestAccrualPayload(),
        ),
    )


class Scheduler:
    """Owns the repeatable timers on a queue.

    ``arm`` drops whatever repeatables are registered and installs the
    canonical set, so calling it again never duplicates a timer.
    """

    def __init__(self, queue: JobQueue, specs: tuple[RepeatableSpec, ...]) -> None:
        self._queue = queue
        self.specs = specs
        self._armed = False

    @property
    def armed(self) -> bool:
        return self._armed

    def arm(self, run_immediately: bool = True) -> list[str]:
        removed = self._queue.clear_repeatables()
        if removed:
            logger.info("Cleared %d stale repeatable jobs", removed)
        for spec in self.specs:
            self._queue.register_repeatable(
                spec.key,
                spec.job_name,
                spec.period_seconds,
                spec.payload,
                run_immediately=run_immediately,
            )
        self._armed = True
        return [spec.key for spec in self.specs]

    def disarm(self) -> None:
        if not self._armed:
            return
        for spec in self.specs:
            self._queue.remove_repeatable(spec.key)
        self._queue.stop_timers()
        self._armed = False
        logger.info("Repeatable jobs stopped")
