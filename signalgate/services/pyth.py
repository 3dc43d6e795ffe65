"""
Price source backed by the Pyth Hermes HTTP API.

GET {hermes}/v2/updates/price/latest?ids[]=<feed id>&parsed=true
Price = int(price) * 10**expo.
"""
import httpx
import logging
import time
from dataclasses import dataclass
from typing import Optional

from ..lib.errors import UpstreamUnavailable

logger = logging.getLogger("pyth")

HERMES_URL = "https://hermes.pyth.network"

PRICE_FEED_IDS = {
    "BTC/USD": "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
    "ETH/USD": "ff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    "SOL/USD": "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
    "USDC/USD": "eaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
}


@dataclass
class PriceData:
    symbol: str
    price: float
    timestamp: int  # epoch millis


class PythPriceSource:
    def __init__(self, base_url: str = HERMES_URL, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_price(self, symbol: str) -> PriceData:
        feed_id = PRICE_FEED_IDS.get(symbol)
        if not feed_id:
            raise UpstreamUnavailable(f"No price feed for {symbol}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(
                    f"{self.base_url}/v2/updates/price/latest",
                    params={"ids[]": feed_id, "parsed": "true"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Pyth request failed for {symbol}: {e}")
            raise UpstreamUnavailable("Price feed unavailable") from e

        if resp.status_code != 200:
            logger.error(f"Pyth price failed for {symbol}: {resp.status_code} - {resp.text}")
            raise UpstreamUnavailable("Price feed unavailable")

        try:
            parsed = resp.json()["parsed"][0]["price"]
            price = int(parsed["price"]) * (10 ** int(parsed["expo"]))
            publish_time = int(parsed.get("publish_time", time.time()))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"Unexpected Pyth response for {symbol}: {e}")
            raise UpstreamUnavailable("Price feed returned no price") from e

        if price <= 0:
            raise UpstreamUnavailable("Price feed returned no price")
        return PriceData(symbol=symbol, price=float(price), timestamp=publish_time * 1000)


class StaticPriceSource:
    """Fixed prices. For local development and tests."""

    def __init__(self, prices: dict[str, float]):
        self.prices = dict(prices)

    async def get_price(self, symbol: str) -> PriceData:
        if symbol not in self.prices:
            raise UpstreamUnavailable(f"No price for {symbol}")
        return PriceData(symbol=symbol, price=self.prices[symbol], timestamp=int(time.time() * 1000))
