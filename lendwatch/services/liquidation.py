"""Liquidation executor.

Each attempt walks ``evaluating -> submitting -> confirming`` and ends in
exactly one of ``settled``, ``aborted`` or ``failed_terminal``. The
profitability read runs outside any lock. Everything from the store
re-read to persisting the result runs under the signer lock and the
position's lock, so two attempts on the same position produce one
settlement and one abort, and a concurrent repay waits its turn.
"""
from __future__ import annotations

import asyncio
import logging

from ..config import LiquidationConfig
from ..errors import (
    LendwatchError,
    PositionNotFoundError,
    StaleStateError,
    TerminalError,
    TransientError,
    UnrecoverableJobError,
)
from ..interfaces.chain import LendingChain
from ..interfaces.store import PositionStore
from ..jobs.payloads import LiquidationPayload
from ..models import (
    LIQUIDATABLE_BELOW,
    LiquidationOutcome,
    LiquidationState,
    Position,
    PositionStatus,
    utcnow,
)
from .locks import PositionLocks
from .profitability import ProfitabilityEvaluator

logger = logging.getLogger(__name__)

PERSIST_ATTEMPTS = 3


class LiquidationExecutor:
    def __init__(
        self,
        store: PositionStore,
        chain: LendingChain,
        evaluator: ProfitabilityEvaluator,
        locks: PositionLocks,
        config: LiquidationConfig,
        liquidation_health_factor: float = LIQUIDATABLE_BELOW,
    ) -> None:
        self._store = store
        self._chain = chain
        self._evaluator = evaluator
        self._locks = locks
        self._config = config
        self._liquidation_hf = liquidation_health_factor
        self._signer_lock = asyncio.Lock()
        self.persist_retry_seconds = 1.0

    @staticmethod
    def _outcome(
        position_id: str, state: LiquidationState, reason: str = "", **extra
    ) -> LiquidationOutcome:
        if state is LiquidationState.ABORTED:
            logger.info("Liquidation of %s aborted: %s", position_id, reason)
        return LiquidationOutcome(position_id=position_id, state=state, reason=reason, **extra)

    async def _load_active(self, position_id: str) -> Position | LiquidationOutcome:
        try:
            position = await self._store.find_by_id(position_id)
        except PositionNotFoundError:
            return self._outcome(position_id, LiquidationState.ABORTED, "position not found")
        if not position.is_active:
            return self._outcome(
                position_id,
                LiquidationState.ABORTED,
                f"position is {position.status.value}",
            )
        if position.on_chain_id is None:
            return self._outcome(
                position_id, LiquidationState.ABORTED, "position has no on-chain id"
            )
        if position.liquidation_blocked:
            return self._outcome(
                position_id,
                LiquidationState.ABORTED,
                f"previous liquidation failed: {position.liquidation_failure}; "
                "awaiting operator",
            )
        return position

    async def _reconcile_stale(
        self, position: Position, error: StaleStateError
    ) -> LiquidationOutcome:
        if error.not_active:
            closed = position.transition_to(PositionStatus.CLOSED)
            await self._store.save(closed)
            logger.warning(
                "Position %s is not active on-chain; marked closed", position.id
            )
            return self._outcome(
                position.id, LiquidationState.ABORTED, "position not active on-chain"
            )
        return self._outcome(
            position.id, LiquidationState.ABORTED, "position healthy on-chain"
        )

    async def _fail(
        self, position: Position, reason: str, tx_hash: str = ""
    ) -> LiquidationOutcome:
        logger.critical(
            "Liquidation of position %s failed terminally: %s%s",
            position.id,
            reason,
            f" (tx {tx_hash})" if tx_hash else "",
        )
        marked = position.with_liquidation_failure(reason, utcnow(), tx_hash)
        try:
            await self._persist(marked)
        except LendwatchError as e:
            logger.critical(
                "Position %s has no failure marker (%s); disable liquidation before the next cycle",
                position.id,
                e,
            )
        return self._outcome(
            position.id, LiquidationState.FAILED_TERMINAL, reason, tx_hash=tx_hash
        )

    async def execute(self, position_id: str) -> LiquidationOutcome:
        """Run one liquidation attempt for ``position_id``.

        ``TransientError`` from reads before submission propagates so the
        job is retried; nothing has been sent at that point.
        """
        # evaluating
        loaded = await self._load_active(position_id)
        if isinstance(loaded, LiquidationOutcome):
            return loaded
        candidate = await self._evaluator.evaluate(loaded)
        if not candidate.is_profitable:
            return self._outcome(
                position_id,
                LiquidationState.ABORTED,
                f"net profit ${candidate.net_profit_usd:,.2f} below "
                f"${self._config.min_profit_usd:,.2f}",
                net_profit_usd=candidate.net_profit_usd,
            )

        async with self._signer_lock, self._locks.hold(position_id):
            loaded = await self._load_active(position_id)
            if isinstance(loaded, LiquidationOutcome):
                return loaded
            position = loaded
            ref = position.on_chain_id

            try:
                health_factor = await self._chain.get_health_factor(ref)
            except StaleStateError as e:
                return await self._reconcile_stale(position, e)
            if health_factor >= self._liquidation_hf:
                return self._outcome(
                    position_id,
                    LiquidationState.ABORTED,
                    f"health factor {health_factor:.4f} on-chain",
                )

            # submitting
            try:
                estimate = await self._chain.estimate_liquidation_gas(ref)
                gas_limit = estimate * (100 + self._config.gas_safety_margin_pct) // 100
                tx_hash = await self._chain.submit_liquidation(ref, gas_limit)
            except StaleStateError as e:
                return await self._reconcile_stale(position, e)
            except TerminalError as e:
                return await self._fail(position, str(e), getattr(e, "tx_hash", ""))

            # confirming: the tx is out, so nothing below resubmits.
            try:
                receipt = await self._chain.wait_for_receipt(
                    tx_hash, self._config.confirmation_timeout_seconds
                )
            except LendwatchError as e:
                return await self._fail(position, f"confirmation unknown: {e}", tx_hash)
            if not receipt.success:
                return await self._fail(position, "transaction reverted", receipt.tx_hash)

            liquidated = position.transition_to(
                PositionStatus.LIQUIDATED,
                liquidated_at=utcnow(),
                liquidation_tx_hash=receipt.tx_hash.lower(),
            )
            await self._persist(liquidated)

        logger.info(
            "Position %s liquidated in %s (est. profit $%.2f)",
            position_id,
            receipt.tx_hash,
            candidate.net_profit_usd,
        )
        return self._outcome(
            position_id,
            LiquidationState.SETTLED,
            tx_hash=receipt.tx_hash,
            net_profit_usd=candidate.net_profit_usd,
        )

    async def _persist(self, position: Position) -> None:
        for attempt in range(1, PERSIST_ATTEMPTS + 1):
            try:
                await self._store.save(position)
                return
            except TransientError as e:
                logger.error(
                    "Saving position %s failed (attempt %d/%d): %s",
                    position.id,
                    attempt,
                    PERSIST_ATTEMPTS,
                    e,
                )
                if attempt < PERSIST_ATTEMPTS:
                    await asyncio.sleep(attempt * self.persist_retry_seconds)
        logger.critical(
            "Position %s (tx %s) could not be persisted after the liquidation attempt",
            position.id,
            position.liquidation_tx_hash,
        )
        raise UnrecoverableJobError(
            f"liquidation result for {position.id} not persisted"
        )

    async def handle(self, payload: LiquidationPayload) -> LiquidationOutcome:
        outcome = await self.execute(payload.position_id)
        if outcome.state is LiquidationState.FAILED_TERMINAL:
            raise UnrecoverableJobError(outcome.reason)
        return outcome
