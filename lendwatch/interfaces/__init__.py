"""Protocol interfaces for the liquidation orchestrator."""
from .chain import LendingChain
from .notifier import Notifier
from .price_oracle import PriceOracle
from .store import FeeStore, PositionStore

__all__ = ["FeeStore", "LendingChain", "Notifier", "PositionStore", "PriceOracle"]
