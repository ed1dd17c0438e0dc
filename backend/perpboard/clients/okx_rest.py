"""OKX REST API client with bounded retry and exponential backoff."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from perpboard.core.models import Candle, FundingInfo, DEFAULT_SETTLEMENT_HOURS
from perpboard.errors import (
    FetchError,
    MarketDataError,
    ParseError,
    RateLimitError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

# Statuses OKX (or a proxy in front of it) uses for throttling
THROTTLE_STATUSES = frozenset({418, 429, 503})
# OKX puts code 50011 in the body when the request rate is exceeded
RATE_LIMIT_MARKERS = ("50011", "Rate limit")

HOUR_MS = 60 * 60 * 1000


class RateLimitedFetcher:
    """Sends one request with bounded retry and exponential backoff.

    Throttling responses and httpx request errors (transport, decoding,
    redirect) are retried; the delay starts at ``base_delay`` and doubles per
    retry up to ``max_delay``. Any other non-2xx response is returned to the
    caller as-is.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_attempts: int = 4,
        base_delay: float = 0.4,
        max_delay: float = 4.0,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self._client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @staticmethod
    def is_throttled(response: httpx.Response) -> bool:
        """Check status and body for rate-limit signals."""
        if response.status_code in THROTTLE_STATUSES:
            return True
        body = response.text
        return any(marker in body for marker in RATE_LIMIT_MARKERS)

    async def fetch(
        self, request: httpx.Request, max_attempts: int | None = None
    ) -> httpx.Response:
        """
        Send ``request``, retrying on throttling and transport errors.

        Args:
            request: Prepared httpx request (re-sent on retry)
            max_attempts: Overrides the fetcher default

        Returns:
            The first 2xx response, or the first non-throttling error response

        Raises:
            RateLimitError: Every attempt was throttled (last one decides)
            TransientNetworkError: The last attempt failed with an httpx request error
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        delay = self.base_delay
        last_error: MarketDataError | None = None
        cause: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.send(request)
            except httpx.RequestError as e:
                # transport failures, undecodable bodies, redirect loops
                last_error = TransientNetworkError(
                    f"{request.method} {request.url.path} failed: {e!r}"
                )
                cause = e
            else:
                if response.is_success or not self.is_throttled(response):
                    return response
                last_error = RateLimitError(
                    f"{request.method} {request.url.path} throttled "
                    f"(HTTP {response.status_code})",
                    status_code=response.status_code,
                )
                cause = None

            if attempt < attempts:
                logger.debug(
                    f"{last_error} - retry {attempt}/{attempts - 1} in {delay:.2f}s"
                )
                await self._sleep(delay)
                delay = min(delay * 2, self.max_delay)

        assert last_error is not None
        raise last_error from cause


class OkxRestClient:
    """OKX v5 public REST API client."""

    BASE_URL = "https://www.okx.com"

    def __init__(
        self,
        base_url: str | None = None,
        max_attempts: int = 4,
        backoff_base: float = 0.4,
        backoff_cap: float = 4.0,
        sleep: SleepFunc = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or self.BASE_URL
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._fetcher: RateLimitedFetcher | None = None

    async def _get_fetcher(self) -> RateLimitedFetcher:
        """Get or create the HTTP client and its fetcher."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=15.0,
                transport=self._transport,
            )
            self._fetcher = RateLimitedFetcher(
                self._client,
                max_attempts=self.max_attempts,
                base_delay=self.backoff_base,
                max_delay=self.backoff_cap,
                sleep=self._sleep,
            )
        assert self._fetcher is not None
        return self._fetcher

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
        self._fetcher = None

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> list:
        """GET an OKX endpoint and return its ``data`` array."""
        fetcher = await self._get_fetcher()
        assert self._client is not None
        request = self._client.build_request("GET", f"/api/v5{path}", params=params)
        response = await fetcher.fetch(request)

        if not response.is_success:
            raise FetchError(
                f"GET {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ParseError(f"GET {path} returned invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise ParseError(f"GET {path} returned {type(payload).__name__}, expected object")
        if str(payload.get("code")) != "0":
            raise FetchError(
                f"GET {path} failed: code={payload.get('code')} msg={payload.get('msg')}"
            )

        data = payload.get("data")
        if not isinstance(data, list):
            raise ParseError(f"GET {path} returned no data array")
        return data

    async def get_candles(self, inst_id: str, bar: str = "1D", limit: int = 60) -> list[Candle]:
        """
        Fetch candles for an instrument.

        OKX returns rows newest first as
        ``[ts, open, high, low, close, vol, volCcy, ...]`` strings; they are
        reversed to chronological order here.

        Args:
            inst_id: Instrument ID (e.g., "BTC-USDT-SWAP")
            bar: Bar size (e.g., "1D", "4H")
            limit: Number of bars (max 300)

        Returns:
            Candles, oldest first
        """
        rows = await self._request(
            "/market/candles",
            {"instId": inst_id, "bar": bar, "limit": min(limit, 300)},
        )

        candles = []
        for row in reversed(rows):
            try:
                candles.append(
                    Candle(
                        timestamp=int(row[0]),
                        open=float(row[1]),
                        high=float(row[2]),
                        low=float(row[3]),
                        close=float(row[4]),
                        volume=float(row[5]),
                    )
                )
            except (IndexError, TypeError, ValueError) as e:
                raise ParseError(f"Bad {bar} candle row for {inst_id}: {row!r}") from e

        return candles

    async def get_tickers(self, inst_type: str = "SWAP") -> list[dict[str, Any]]:
        """Fetch the ticker snapshot for every instrument of a market type."""
        return await self._request("/market/tickers", {"instType": inst_type})

    async def get_swap_instruments(self, quote: str = "USDT") -> list[str]:
        """List perpetual swap instrument IDs quoted in ``quote``."""
        data = await self._request("/public/instruments", {"instType": "SWAP"})
        marker = f"-{quote}-"
        return [
            item["instId"]
            for item in data
            if isinstance(item, dict) and marker in item.get("instId", "")
        ]

    async def get_funding_rate(self, inst_id: str) -> FundingInfo | None:
        """Fetch the current funding rate for a perpetual swap."""
        data = await self._request("/public/funding-rate", {"instId": inst_id})
        if not data:
            return None

        item = data[0]
        try:
            funding_rate = float(item.get("fundingRate") or 0)
            next_rate_raw = item.get("nextFundingRate")
            next_rate = float(next_rate_raw) if next_rate_raw not in (None, "") else None
            funding_time = int(item.get("fundingTime") or 0)
            next_funding_time = int(item.get("nextFundingTime") or 0)
        except (TypeError, ValueError) as e:
            raise ParseError(f"Bad funding payload for {inst_id}: {item!r}") from e

        interval = DEFAULT_SETTLEMENT_HOURS
        if funding_time and next_funding_time:
            hours = round((next_funding_time - funding_time) / HOUR_MS)
            if 0 < hours <= DEFAULT_SETTLEMENT_HOURS:
                interval = hours

        return FundingInfo(
            inst_id=inst_id,
            funding_rate=funding_rate,
            next_funding_rate=next_rate,
            funding_time=funding_time,
            next_funding_time=next_funding_time,
            settlement_interval_hours=interval,
        )
