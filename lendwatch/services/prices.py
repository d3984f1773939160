"""Price cache and the price-refresh job handler."""
from __future__ import annotations

import logging
import time
from typing import Callable

from ..errors import TransientError
from ..interfaces.price_oracle import PriceOracle
from ..jobs.payloads import PriceRefreshPayload

logger = logging.getLogger(__name__)


class PriceBook:
    """Latest USD price per symbol; entries older than ``max_age_seconds`` expire."""

    def __init__(
        self, max_age_seconds: float = 180.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._prices: dict[str, tuple[float, float]] = {}

    def update(self, symbol: str, price: float) -> None:
        self._prices[symbol.upper()] = (price, self._clock())

    def update_many(self, prices: dict[str, float]) -> None:
        for symbol, price in prices.items():
            self.update(symbol, price)

    def get(self, symbol: str) -> float | None:
        entry = self._prices.get(symbol.upper())
        if entry is None:
            return None
        price, fetched_at = entry
        if self._clock() - fetched_at > self.max_age_seconds:
            return None
        return price

    def snapshot(self) -> dict[str, float]:
        return {
            symbol: price
            for symbol in self._prices
            if (price := self.get(symbol)) is not None
        }


class PriceUpdater:
    """Refreshes the price book from the oracle."""

    def __init__(self, oracle: PriceOracle, book: PriceBook) -> None:
        self._oracle = oracle
        self._book = book

    async def run(self, symbols: tuple[str, ...] | None = None) -> int:
        prices = await self._oracle.fetch_prices(list(symbols) if symbols else None)
        usable = {symbol: price for symbol, price in prices.items() if price > 0}
        if not usable:
            raise TransientError("Price oracle returned no usable prices")

        self._book.update_many(usable)
        logger.info(
            "Prices refreshed: %s",
            ", ".join(f"{s}=${p:,.2f}" for s, p in sorted(usable.items())),
        )
        return len(usable)

    async def handle(self, payload: PriceRefreshPayload) -> int:
        return await self.run(payload.symbols)
