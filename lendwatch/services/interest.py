"""Interest and fee arithmetic, and the interest-accrual job handler."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from ..interfaces.store import PositionStore
from ..jobs.payloads import InterestAccrualPayload
from ..models import LIQUIDATION_THRESHOLD, utcnow
from .locks import PositionLocks

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365 * 24 * 60 * 60
# Interest is charged for at least one hour.
MIN_ACCRUAL_YEARS = 1 / (365 * 24)


def parse_annual_rate(value: str | float) -> float:
    """``"5.2%"`` -> 0.052; numbers are taken as fractions already."""
    if isinstance(value, str):
        text = value.strip().rstrip("%").strip()
        if not text:
            raise ValueError("Empty annual rate")
        return float(text) / 100
    return float(value)


def years_between(start: datetime, end: datetime) -> float:
    return max((end - start).total_seconds(), 0.0) / SECONDS_PER_YEAR


def accrued_interest(
    principal: float, annual_rate: float, start: datetime, now: datetime
) -> float:
    return principal * annual_rate * max(years_between(start, now), MIN_ACCRUAL_YEARS)


def service_fee(principal: float, percentage: float) -> float:
    return principal * percentage / 100


class InterestAccrual:
    def __init__(
        self,
        store: PositionStore,
        locks: PositionLocks,
        clock: Callable[[], datetime] = utcnow,
        liquidation_threshold: float = LIQUIDATION_THRESHOLD,
    ) -> None:
        self._store = store
        self._locks = locks
        self._clock = clock
        self._threshold = liquidation_threshold

    async def run(self) -> dict[str, int]:
        """Bring ``accrued_interest`` up to date on every active position."""
        updated = failed = 0
        for position in await self._store.find_active():
            if self._locks.is_locked(position.id):
                continue
            try:
                async with self._locks.hold(position.id):
                    current = await self._store.find_by_id(position.id)
                    if not current.is_active:
                        continue
                    now = self._clock()
                    interest = accrued_interest(
                        current.borrowed_amount, current.annual_rate, current.created_at, now
                    )
                    accrued = current.with_accrual(interest, now)
                    if current.on_chain_id is None:
                        # Without an on-chain id, local debt drives the health factor.
                        accrued = accrued.with_health(
                            current.collateral_value_usd, accrued.current_debt, self._threshold
                        )
                    await self._store.save(accrued)
            except Exception as e:
                failed += 1
                logger.error("Interest accrual failed for position %s: %s", position.id, e)
                continue
            updated += 1

        logger.info("Interest accrued on %d positions (%d failed)", updated, failed)
        return {"updated": updated, "failed": failed}

    async def handle(self, payload: InterestAccrualPayload) -> dict[str, int]:
        return await self.run()
