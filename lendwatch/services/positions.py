"""Position lifecycle outside the job pipeline: origination, repayment, stats."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from ..errors import DuplicatePositionError, PositionNotFoundError
from ..interfaces.store import FeeStore, PositionStore
from ..models import (
    LIQUIDATION_THRESHOLD,
    FeeType,
    PlatformStats,
    Position,
    PositionStatus,
    RepayError,
    RepayResult,
    compute_health_factor,
    is_valid_address,
    is_valid_tx_hash,
    utcnow,
)
from .interest import accrued_interest, parse_annual_rate, service_fee
from .locks import PositionLocks

logger = logging.getLogger(__name__)


class PositionService:
    def __init__(
        self,
        store: PositionStore,
        fees: FeeStore,
        locks: PositionLocks,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._fees = fees
        self._locks = locks
        self._clock = clock

    async def create(
        self,
        *,
        user_address: str,
        protocol: str,
        token_symbol: str,
        collateral_amount: float,
        collateral_value_usd: float,
        borrowed_amount: float,
        tx_hash: str,
        annual_rate: str | float,
        ltv: float = 0.70,
        adapter_address: str = "",
        token_address: str = "",
        network: str = "sepolia",
        block_number: int | None = None,
        on_chain_id: int | None = None,
        liquidation_threshold: float = LIQUIDATION_THRESHOLD,
    ) -> Position:
        """Record a new loan. A tx hash seen before returns the existing record."""
        if not is_valid_address(user_address):
            raise ValueError(f"Invalid user address: {user_address}")
        if not is_valid_tx_hash(tx_hash):
            raise ValueError(f"Invalid transaction hash: {tx_hash}")
        for label, address in (("adapter", adapter_address), ("token", token_address)):
            if address and not is_valid_address(address):
                raise ValueError(f"Invalid {label} address: {address}")
        if collateral_amount <= 0 or borrowed_amount <= 0:
            raise ValueError("Collateral and borrowed amounts must be positive")

        tx_hash = tx_hash.lower()
        existing = await self._store.find_by_tx_hash(tx_hash)
        if existing is not None:
            logger.warning("Position for tx %s already recorded as %s", tx_hash, existing.id)
            return existing

        fee = await self._fees.get_active_fee(FeeType.ORIGINATION)
        platform_fee = borrowed_amount * fee.rate if fee else 0.0
        now = self._clock()
        position = Position(
            user_address=user_address.lower(),
            protocol=protocol,
            token_symbol=token_symbol.upper(),
            collateral_amount=collateral_amount,
            collateral_value_usd=collateral_value_usd,
            borrowed_amount=borrowed_amount,
            tx_hash=tx_hash,
            platform_fee=platform_fee,
            net_disbursed=borrowed_amount - platform_fee,
            annual_rate=parse_annual_rate(annual_rate),
            ltv=ltv,
            health_factor=compute_health_factor(
                collateral_value_usd, borrowed_amount, liquidation_threshold
            ),
            status=PositionStatus.ACTIVE,
            adapter_address=adapter_address.lower(),
            token_address=token_address.lower(),
            network=network,
            block_number=block_number,
            on_chain_id=on_chain_id,
            fee_recipient=fee.recipient_address if fee else "",
            created_at=now,
            updated_at=now,
        )
        try:
            await self._store.insert(position)
        except DuplicatePositionError:
            # Lost a race with another request for the same tx.
            existing = await self._store.find_by_tx_hash(tx_hash)
            if existing is None:
                raise
            return existing

        logger.info(
            "Position %s created for %s: borrowed %.2f, fee %.2f, HF %.2f",
            position.id,
            position.user_address,
            borrowed_amount,
            platform_fee,
            position.health_factor,
        )
        return position

    async def get(self, position_id: str) -> Position:
        return await self._store.find_by_id(position_id)

    async def list_for_user(
        self,
        user_address: str,
        status: PositionStatus | None = None,
        protocol: str | None = None,
    ) -> list[Position]:
        if not is_valid_address(user_address):
            raise ValueError(f"Invalid user address: {user_address}")
        return await self._store.find_by_user(user_address.lower(), status, protocol)

    async def repay(self, position_id: str, tx_hash: str = "") -> RepayResult:
        """Settle a loan by repayment.

        Holds the position lock, so it waits out an in-flight liquidation
        and then finds the position no longer active.
        """
        try:
            async with self._locks.hold(position_id):
                return await self._repay_locked(position_id, tx_hash)
        except Exception as e:
            logger.exception("Repayment of position %s failed", position_id)
            return RepayResult(
                success=False,
                position_id=position_id,
                error=RepayError.INTERNAL,
                message=str(e),
            )

    async def _repay_locked(self, position_id: str, tx_hash: str) -> RepayResult:
        try:
            position = await self._store.find_by_id(position_id)
        except PositionNotFoundError:
            return RepayResult(
                success=False,
                position_id=position_id,
                error=RepayError.NOT_FOUND,
                message="Position not found",
            )
        if not position.is_active:
            return RepayResult(
                success=False,
                position_id=position_id,
                error=RepayError.NOT_ACTIVE,
                message=f"Position is {position.status.value}",
            )

        now = self._clock()
        principal = position.borrowed_amount
        interest = accrued_interest(principal, position.annual_rate, position.created_at, now)
        fee_config = await self._fees.get_active_fee(FeeType.REPAYMENT)
        fee = service_fee(principal, fee_config.percentage) if fee_config else 0.0
        total_due = principal + interest + fee

        repaid = position.transition_to(
            PositionStatus.REPAID,
            repaid_at=now,
            repayment_tx_hash=tx_hash.lower(),
            repayment_amount=total_due,
            final_interest_paid=interest,
            service_fee_paid=fee,
            accrued_interest=interest,
            last_accrual_at=now,
        )
        await self._store.save(repaid)
        logger.info(
            "Position %s repaid: principal %.2f + interest %.4f + fee %.4f = %.4f",
            position_id,
            principal,
            interest,
            fee,
            total_due,
        )
        return RepayResult(
            success=True,
            position_id=position_id,
            message="Loan repaid successfully",
            total_due=total_due,
            interest=interest,
            service_fee=fee,
            collateral_released=position.collateral_amount,
        )

    async def clear_liquidation_failure(self, position_id: str) -> Position:
        """Let the updater queue liquidations for this position again."""
        async with self._locks.hold(position_id):
            position = await self._store.find_by_id(position_id)
            if not position.liquidation_blocked:
                return position
            cleared = position.without_liquidation_failure()
            await self._store.save(cleared)
        logger.warning(
            "Liquidation failure on position %s cleared (was: %s)",
            position_id,
            position.liquidation_failure,
        )
        return cleared

    async def platform_stats(self) -> PlatformStats:
        return await self._store.stats()
