"""Health-factor updater job handler."""
from __future__ import annotations

import logging

from ..config import LIQUIDATION, NOTIFICATION, MonitorConfig
from ..errors import PositionNotFoundError, StaleStateError, TransientError
from ..interfaces.chain import LendingChain
from ..interfaces.store import PositionStore
from ..jobs.payloads import HealthCheckPayload, LiquidationPayload, NotificationPayload
from ..jobs.queue import JobQueue
from ..models import HealthCheckSummary, Position, PositionStatus
from .locks import PositionLocks
from .prices import PriceBook

logger = logging.getLogger(__name__)


class HealthFactorUpdater:
    """Recomputes and persists the health factor of every active position.

    ``HF = collateral_amount * price * threshold / debt`` where debt is the
    on-chain current debt when the position has an on-chain id, and the
    locally accrued debt otherwise. Positions below the liquidation level
    get a liquidation job; positions below the warning level get a
    notification job. A failure on one position is counted and the batch
    continues.
    """

    def __init__(
        self,
        store: PositionStore,
        prices: PriceBook,
        queue: JobQueue,
        locks: PositionLocks,
        config: MonitorConfig,
        chain: LendingChain | None = None,
        *,
        liquidation_enabled: bool = True,
        liquidation_attempts: int = 3,
    ) -> None:
        self._store = store
        self._prices = prices
        self._queue = queue
        self._locks = locks
        self._config = config
        self._chain = chain
        self._liquidation_enabled = liquidation_enabled
        self._liquidation_attempts = liquidation_attempts

    async def _positions(self, position_ids: tuple[str, ...] | None) -> list[Position]:
        if position_ids is None:
            return await self._store.find_active()
        found = []
        for position_id in position_ids:
            try:
                found.append(await self._store.find_by_id(position_id))
            except PositionNotFoundError:
                logger.warning("Health check skipped unknown position %s", position_id)
        return [p for p in found if p.is_active]

    async def _debt(self, position: Position) -> float:
        if self._chain is None or position.on_chain_id is None:
            return position.current_debt
        return await self._chain.get_current_debt(position.on_chain_id)

    async def _refresh(self, position: Position) -> Position | None:
        """Return the saved position, or ``None`` when it left ``active``."""
        price = self._prices.get(position.token_symbol)
        if price is None:
            raise TransientError(f"No fresh price for {position.token_symbol}")

        async with self._locks.hold(position.id):
            current = await self._store.find_by_id(position.id)
            if not current.is_active:
                return None
            try:
                debt = await self._debt(current)
            except StaleStateError as e:
                if not e.not_active:
                    raise
                await self._store.save(current.transition_to(PositionStatus.CLOSED))
                logger.warning("Position %s not active on-chain; marked closed", current.id)
                return None
            updated = current.with_health(
                current.collateral_amount * price, debt, self._config.liquidation_threshold
            )
            await self._store.save(updated)
            return updated

    async def run(self, position_ids: tuple[str, ...] | None = None) -> HealthCheckSummary:
        positions = await self._positions(position_ids)
        updated = at_risk = liquidatable = failed = 0

        for position in positions:
            if self._locks.is_locked(position.id):
                logger.debug("Position %s busy; skipping this cycle", position.id)
                continue
            try:
                refreshed = await self._refresh(position)
            except Exception as e:
                failed += 1
                logger.error("Health update failed for position %s: %s", position.id, e)
                continue
            if refreshed is None:
                continue

            updated += 1
            hf = refreshed.health_factor
            if hf < self._config.liquidation_health_factor:
                liquidatable += 1
                await self._enqueue_liquidation(refreshed)
            elif hf < self._config.warning_health_factor:
                at_risk += 1
                await self._enqueue_notification(refreshed)

        summary = HealthCheckSummary(
            updated=updated, at_risk=at_risk, liquidatable=liquidatable, failed=failed
        )
        logger.info(
            "Health check: %d updated, %d at risk, %d liquidatable, %d failed",
            summary.updated,
            summary.at_risk,
            summary.liquidatable,
            summary.failed,
        )
        return summary

    async def _enqueue_liquidation(self, position: Position) -> None:
        logger.warning(
            "Position %s liquidatable (HF %.4f)", position.id, position.health_factor
        )
        if not self._liquidation_enabled:
            return
        if position.liquidation_blocked:
            logger.warning(
                "Position %s not queued: last liquidation failed (%s); clear it to retry",
                position.id,
                position.liquidation_failure,
            )
            return
        try:
            await self._queue.enqueue(
                LIQUIDATION,
                LiquidationPayload(
                    position_id=position.id,
                    triggered_health_factor=position.health_factor,
                ),
                priority=1,
                attempts=self._liquidation_attempts,
                job_id=f"liquidate:{position.id}",
            )
        except (RuntimeError, ValueError) as e:
            logger.error("Could not enqueue liquidation for %s: %s", position.id, e)

    async def _enqueue_notification(self, position: Position) -> None:
        try:
            await self._queue.enqueue(
                NOTIFICATION,
                NotificationPayload(
                    position_id=position.id,
                    user_address=position.user_address,
                    health_factor=position.health_factor,
                ),
            )
        except (RuntimeError, ValueError) as e:
            logger.error("Could not enqueue notification for %s: %s", position.id, e)

    async def handle(self, payload: HealthCheckPayload) -> HealthCheckSummary:
        return await self.run(payload.position_ids)
