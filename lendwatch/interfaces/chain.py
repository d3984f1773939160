"""Chain client protocol — loan broker reads and liquidation writes."""
from typing import Protocol

from ..models import ProtocolParams, TxReceipt


class LendingChain(Protocol):
    """Abstract interface for the on-chain loan broker."""

    async def get_health_factor(self, position_ref: int) -> float: ...

    async def get_current_debt(self, position_ref: int) -> float: ...

    async def get_config(self) -> ProtocolParams: ...

    async def get_gas_price(self) -> int: ...

    async def estimate_liquidation_gas(self, position_ref: int) -> int: ...

    async def submit_liquidation(self, position_ref: int, gas_limit: int) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt: ...

    async def close(self) -> None: ...
