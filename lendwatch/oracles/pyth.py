"""Pyth Network price oracle."""
from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone

import aiohttp
import certifi

from ..config import PythConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: float
    publish_time: datetime


class PythOracle:
    """Fetch collateral token prices from the Pyth Hermes endpoint."""

    def __init__(self, config: PythConfig, timeout: float = 10.0) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout = timeout

    @property
    def symbols(self) -> list[str]:
        return sorted(self.price_feeds)

    async def fetch_quotes(self, symbols: list[str] | None = None) -> list[PriceQuote]:
        """Fetch the latest quotes; returns an empty list on any failure.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.
        """
        feeds = self.price_feeds
        if symbols is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids:
            return []

        query_params = "&".join(f"ids[]={fid}" for fid in feed_ids)
        url = f"{self.hermes_url}?{query_params}"

        id_to_symbols: dict[str, list[str]] = {}
        for symbol, feed_id in feeds.items():
            id_to_symbols.setdefault(feed_id.lower().removeprefix("0x"), []).append(symbol)

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        quotes: list[PriceQuote] = []
        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return quotes

                    data = await response.json()
        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return quotes

        for item in data.get("parsed", []):
            feed_id = str(item.get("id", "")).lower().removeprefix("0x")
            price_data = item.get("price", {})
            price = int(price_data.get("price", 0)) * (10 ** int(price_data.get("expo", 0)))
            publish_time = datetime.fromtimestamp(
                int(price_data.get("publish_time", 0)), tz=timezone.utc
            )
            for symbol in id_to_symbols.get(feed_id, []):
                quotes.append(PriceQuote(symbol, price, publish_time))

        logger.debug(
            "Fetched %d Pyth prices: %s",
            len(quotes),
            ", ".join(f"{q.symbol}=${q.price:,.4f}" for q in quotes),
        )
        return quotes

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        return {q.symbol: q.price for q in await self.fetch_quotes(symbols)}
