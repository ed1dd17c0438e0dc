"""Fundamentals refresh: market-cap data and funding rates.

Runs on its own cadence, independent of the indicator scheduler. A failed
refresh keeps the previous maps.
"""

import asyncio
import logging
import time

from perpboard.clients.coingecko import CoinGeckoClient
from perpboard.clients.okx_rest import OkxRestClient
from perpboard.core.models import FundingInfo, MarketCapInfo
from perpboard.errors import MarketDataError

logger = logging.getLogger(__name__)

FUNDING_BATCH_SIZE = 20
FUNDING_BATCH_PAUSE = 0.1


class FundamentalsService:
    """Owns ``market_caps`` (by base symbol) and ``funding`` (by inst id)."""

    def __init__(
        self,
        okx: OkxRestClient,
        coingecko: CoinGeckoClient,
        quote: str = "USDT",
        interval: float = 5 * 60,
        batch_size: int = FUNDING_BATCH_SIZE,
        batch_pause: float = FUNDING_BATCH_PAUSE,
    ):
        self.okx = okx
        self.coingecko = coingecko
        self.quote = quote
        self.interval = interval
        self.batch_size = batch_size
        self.batch_pause = batch_pause

        self.market_caps: dict[str, MarketCapInfo] = {}
        self.funding: dict[str, FundingInfo] = {}
        self.market_caps_updated_at: float | None = None
        self.funding_updated_at: float | None = None

        self._running = False
        self._task: asyncio.Task | None = None

    async def refresh_market_caps(self) -> bool:
        """Replace the market-cap map. Returns False (map kept) on failure."""
        try:
            market_caps = await self.coingecko.get_market_caps()
        except MarketDataError as e:
            logger.warning(f"Market cap refresh failed, keeping previous data: {e}")
            return False

        if not market_caps:
            logger.warning("Market cap refresh returned nothing, keeping previous data")
            return False

        self.market_caps = market_caps
        self.market_caps_updated_at = time.time()
        return True

    async def refresh_funding(self) -> bool:
        """
        Fetch funding rates for every quote-currency swap.

        Requests go out ``batch_size`` at a time with ``batch_pause`` between
        batches. Instruments whose request fails keep their previous value.
        """
        try:
            inst_ids = await self.okx.get_swap_instruments(self.quote)
        except MarketDataError as e:
            logger.warning(f"Funding refresh failed listing instruments: {e}")
            return False

        funding = dict(self.funding)
        failed = 0
        for start in range(0, len(inst_ids), self.batch_size):
            batch = inst_ids[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.okx.get_funding_rate(inst_id) for inst_id in batch),
                return_exceptions=True,
            )
            for inst_id, result in zip(batch, results):
                if isinstance(result, FundingInfo):
                    funding[inst_id] = result
                elif isinstance(result, MarketDataError):
                    failed += 1
                    logger.debug(f"Funding rate failed for {inst_id}: {result}")
                elif isinstance(result, BaseException):
                    raise result

            if start + self.batch_size < len(inst_ids):
                await asyncio.sleep(self.batch_pause)

        self.funding = funding
        self.funding_updated_at = time.time()
        if failed:
            logger.warning(f"Funding refresh: {failed}/{len(inst_ids)} instruments failed")
        logger.info(f"Funding rates refreshed for {len(inst_ids) - failed} instruments")
        return True

    async def refresh(self) -> None:
        await self.refresh_market_caps()
        await self.refresh_funding()

    async def start(self) -> None:
        """Refresh now, then every ``interval`` seconds, until stopped."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Fundamentals refresh started (every {self.interval}s)")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Fundamentals refresh error: {e!r}")
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Fundamentals refresh stopped")
