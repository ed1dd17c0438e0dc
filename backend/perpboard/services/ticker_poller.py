"""REST ticker snapshots for the live ticker map.

Seeds the map at startup so records exist before the push feed opens, and
keeps it current while the feed is not open. Snapshot rows are merged
through ``TickerFeed.seed`` with the same rules as push deltas.
"""

import asyncio
import logging
from typing import Any, Protocol

from perpboard.clients.okx_ws_ticker import TickerFeed
from perpboard.core.models import FeedState
from perpboard.errors import MarketDataError

logger = logging.getLogger(__name__)


class TickerSnapshotSource(Protocol):
    async def get_tickers(self, inst_type: str = "SWAP") -> list[dict[str, Any]]: ...


class TickerPoller:
    """Polls ``/market/tickers`` every ``interval`` seconds while the feed is down."""

    def __init__(
        self,
        source: TickerSnapshotSource,
        feed: TickerFeed,
        inst_type: str = "SWAP",
        interval: float = 5.0,
    ):
        self.source = source
        self.feed = feed
        self.inst_type = inst_type
        self.interval = interval
        self.polls = 0

        self._running = False
        self._task: asyncio.Task | None = None

    async def poll(self) -> int:
        """Merge one REST snapshot into the feed. Returns tickers merged (0 on failure)."""
        try:
            rows = await self.source.get_tickers(self.inst_type)
        except MarketDataError as e:
            logger.warning(f"Ticker snapshot failed: {e}")
            return 0

        self.polls += 1
        merged = self.feed.seed(rows)
        logger.debug(f"Ticker snapshot merged {merged}/{len(rows)} rows")
        return merged

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Ticker REST polling armed (every {self.interval}s while feed is down)")

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            if self.feed.state == FeedState.OPEN:
                continue
            try:
                await self.poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Ticker polling error: {e!r}")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Ticker REST polling stopped")
