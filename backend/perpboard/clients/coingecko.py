"""CoinGecko client for market-cap rank, logo and 7d sparkline."""

import asyncio
import logging
from typing import Any

import httpx

from perpboard.clients.okx_rest import RateLimitedFetcher, SleepFunc
from perpboard.core.models import MarketCapInfo
from perpboard.errors import FetchError, MarketDataError, ParseError

logger = logging.getLogger(__name__)


class CoinGeckoClient:
    """Reads ``/coins/markets`` pages ordered by market cap."""

    BASE_URL = "https://api.coingecko.com/api/v3"
    PER_PAGE = 250

    def __init__(
        self,
        base_url: str | None = None,
        max_attempts: int = 3,
        sleep: SleepFunc = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or self.BASE_URL
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=20.0,
            transport=transport,
        )
        self._fetcher = RateLimitedFetcher(
            self._client, max_attempts=max_attempts, base_delay=1.0, max_delay=8.0, sleep=sleep
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if not self._client.is_closed:
            await self._client.aclose()

    async def get_markets_page(self, page: int) -> list[dict[str, Any]]:
        """Fetch one page of coins (USD, market-cap descending, with sparkline)."""
        request = self._client.build_request(
            "GET",
            "/coins/markets",
            params={
                "vs_currency": "usd",
                "order": "market_cap_desc",
                "per_page": self.PER_PAGE,
                "page": page,
                "sparkline": "true",
            },
        )
        response = await self._fetcher.fetch(request)
        if not response.is_success:
            raise FetchError(
                f"CoinGecko markets page {page} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"CoinGecko markets page {page}: invalid JSON") from e
        if not isinstance(data, list):
            raise ParseError(f"CoinGecko markets page {page}: expected a list")
        return data

    async def get_market_caps(self, pages: int = 2) -> dict[str, MarketCapInfo]:
        """
        Build the market-cap map keyed by upper-case base symbol.

        When several coins share a ticker symbol the best (lowest) rank wins.
        A failed page after the first keeps what was already collected.
        """
        result: dict[str, MarketCapInfo] = {}

        for page in range(1, pages + 1):
            try:
                coins = await self.get_markets_page(page)
            except MarketDataError as e:
                if not result:
                    raise
                logger.warning(f"CoinGecko page {page} skipped: {e}")
                break

            for coin in coins:
                info = self._parse_coin(coin)
                if info is None:
                    continue
                existing = result.get(info.symbol)
                if existing is None or _rank_key(info.rank) < _rank_key(existing.rank):
                    result[info.symbol] = info

        logger.info(f"CoinGecko: {len(result)} symbols with market data")
        return result

    @staticmethod
    def _parse_coin(coin: Any) -> MarketCapInfo | None:
        if not isinstance(coin, dict) or not coin.get("symbol"):
            return None

        sparkline = []
        spark = coin.get("sparkline_in_7d")
        if isinstance(spark, dict) and isinstance(spark.get("price"), list):
            sparkline = [float(p) for p in spark["price"] if isinstance(p, (int, float))]

        market_cap = coin.get("market_cap")
        rank = coin.get("market_cap_rank")
        return MarketCapInfo(
            symbol=str(coin["symbol"]).upper(),
            rank=int(rank) if isinstance(rank, (int, float)) and rank > 0 else None,
            market_cap=float(market_cap) if isinstance(market_cap, (int, float)) else None,
            logo=coin.get("image") or None,
            sparkline=sparkline,
        )


def _rank_key(rank: int | None) -> int:
    return rank if rank is not None else 1_000_000
