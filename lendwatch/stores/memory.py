"""Dict-backed store for tests and single-process deployments."""
from __future__ import annotations

import logging

from ..errors import DuplicatePositionError, InvalidTransitionError, PositionNotFoundError
from ..models import (
    AT_RISK_BELOW,
    LIQUIDATABLE_BELOW,
    FeeConfig,
    FeeType,
    PlatformStats,
    Position,
    PositionStatus,
)

logger = logging.getLogger(__name__)


class InMemoryPositionStore:
    """Keeps frozen ``Position`` records keyed by id."""

    def __init__(self) -> None:
        self._positions: dict[str, Position] = {}
        self._fees: dict[FeeType, FeeConfig] = {}

    async def find_active(self) -> list[Position]:
        active = [p for p in self._positions.values() if p.is_active]
        return sorted(active, key=lambda p: p.health_factor)

    async def find_by_risk_below(self, threshold: float) -> list[Position]:
        return [p for p in await self.find_active() if p.health_factor < threshold]

    async def find_by_id(self, position_id: str) -> Position:
        try:
            return self._positions[position_id]
        except KeyError:
            raise PositionNotFoundError(position_id) from None

    async def find_by_tx_hash(self, tx_hash: str) -> Position | None:
        tx_hash = tx_hash.lower()
        for position in self._positions.values():
            if position.tx_hash == tx_hash:
                return position
        return None

    async def find_by_user(
        self,
        user_address: str,
        status: PositionStatus | None = None,
        protocol: str | None = None,
    ) -> list[Position]:
        user_address = user_address.lower()
        found = [
            p
            for p in self._positions.values()
            if p.user_address == user_address
            and (status is None or p.status is status)
            and (protocol is None or p.protocol == protocol)
        ]
        return sorted(found, key=lambda p: p.created_at, reverse=True)

    async def insert(self, position: Position) -> Position:
        if await self.find_by_tx_hash(position.tx_hash) is not None:
            raise DuplicatePositionError(position.tx_hash)
        self._positions[position.id] = position
        return position

    async def save(self, position: Position) -> Position:
        stored = self._positions.get(position.id)
        if stored is None:
            raise PositionNotFoundError(position.id)
        if stored.status.is_terminal and position.status is not stored.status:
            raise InvalidTransitionError(
                f"Position {position.id} is {stored.status.value}; "
                f"refusing to save it as {position.status.value}"
            )
        self._positions[position.id] = position
        return position

    async def stats(self) -> PlatformStats:
        positions = list(self._positions.values())
        active = [p for p in positions if p.is_active]
        return PlatformStats(
            total_positions=len(positions),
            active_positions=len(active),
            total_borrowed=sum(p.borrowed_amount for p in positions),
            total_repaid=sum(
                p.repayment_amount
                for p in positions
                if p.status is PositionStatus.REPAID
            ),
            at_risk_count=sum(1 for p in active if p.health_factor < AT_RISK_BELOW),
            liquidatable_count=sum(
                1 for p in active if p.health_factor < LIQUIDATABLE_BELOW
            ),
        )

    async def get_active_fee(self, fee_type: FeeType) -> FeeConfig | None:
        fee = self._fees.get(fee_type)
        if fee is not None and fee.active:
            return fee
        return None

    async def save_fee(self, fee: FeeConfig) -> FeeConfig:
        self._fees[fee.fee_type] = fee
        return fee

    async def close(self) -> None:
        logger.debug("In-memory store closed (%d positions)", len(self._positions))
