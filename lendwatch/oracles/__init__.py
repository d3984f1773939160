"""Price oracles."""
from .pyth import PriceQuote, PythOracle

__all__ = ["PriceQuote", "PythOracle"]
