"""Store protocols — position and fee-config persistence."""
from typing import Protocol

from ..models import FeeConfig, FeeType, PlatformStats, Position, PositionStatus


class PositionStore(Protocol):
    """Read/write position records.

    Callers own concurrency control; implementations raise
    ``TransientError`` when the backing store is unavailable.
    """

    async def find_active(self) -> list[Position]: ...

    async def find_by_risk_below(self, threshold: float) -> list[Position]:
        """Active positions under ``threshold``, worst health factor first."""
        ...

    async def find_by_id(self, position_id: str) -> Position: ...

    async def find_by_tx_hash(self, tx_hash: str) -> Position | None: ...

    async def find_by_user(
        self,
        user_address: str,
        status: PositionStatus | None = None,
        protocol: str | None = None,
    ) -> list[Position]: ...

    async def insert(self, position: Position) -> Position: ...

    async def save(self, position: Position) -> Position: ...

    async def stats(self) -> PlatformStats: ...

    async def close(self) -> None: ...


class FeeStore(Protocol):
    async def get_active_fee(self, fee_type: FeeType) -> FeeConfig | None: ...

    async def save_fee(self, fee: FeeConfig) -> FeeConfig: ...
