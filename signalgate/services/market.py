"""
Market context for the recommendation prompt.

Best effort only: every field may be None. A failed fetch never fails the
request that asked for it.

- Fear & Greed index: alternative.me, market wide.
- Long/short account ratio: CoinGlass public API, per coin, last 1h bucket.
"""
import asyncio
import httpx
import logging
import time
from typing import Optional
from pydantic import BaseModel

logger = logging.getLogger("market")

FEAR_GREED_URL = "https://api.alternative.me/fng/"
LONG_SHORT_URL = "https://open-api.coinglass.com/public/v2/indicator/long_short_account"
CACHE_TTL_SECONDS = 5 * 60


class MarketContext(BaseModel):
    long_short_ratio: Optional[float] = None
    fear_greed_index: Optional[int] = None
    rsi: Optional[float] = None


class MarketContextSource:
    def __init__(self, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport
        # symbol -> (fetched_at, context)
        self._cache: dict[str, tuple[float, MarketContext]] = {}

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: dict, label: str):
        try:
            resp = await client.get(url, params=params, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.warning(f"{label} unavailable: {e}")
            return None
        if resp.status_code != 200:
            logger.warning(f"{label} fetch failed: {resp.status_code}")
            return None
        try:
            return resp.json()
        except ValueError as e:
            logger.warning(f"{label} sent invalid JSON: {e}")
            return None

    async def _fear_greed(self, client: httpx.AsyncClient) -> Optional[int]:
        data = await self._get_json(client, FEAR_GREED_URL, {"limit": 1}, "Fear & Greed")
        try:
            return int(data["data"][0]["value"])
        except (KeyError, IndexError, TypeError, ValueError):
            return None

    async def _long_short_ratio(self, client: httpx.AsyncClient, symbol: str) -> Optional[float]:
        coin = symbol.split("/")[0].lower()
        data = await self._get_json(
            client, LONG_SHORT_URL, {"symbol": coin, "time_type": "1h"}, "Long/short ratio"
        )
        try:
            ratio = float(data["data"][-1]["longShortRatio"])
        except (KeyError, IndexError, TypeError, ValueError):
            return None
        return ratio if ratio > 0 and ratio != float("inf") else None

    async def get_context(self, symbol: str) -> MarketContext:
        cached = self._cache.get(symbol)
        if cached and time.time() - cached[0] < CACHE_TTL_SECONDS:
            return cached[1]

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            fear_greed, long_short = await asyncio.gather(
                self._fear_greed(client), self._long_short_ratio(client, symbol)
            )

        context = MarketContext(long_short_ratio=long_short, fear_greed_index=fear_greed)
        self._cache[symbol] = (time.time(), context)
        return context


class EmptyMarketContext:
    async def get_context(self, symbol: str) -> MarketContext:
        return MarketContext()
