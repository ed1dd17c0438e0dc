"""Run one indicator pass outside the server.

Fetches the SWAP ticker snapshot over REST, ranks instruments by 24h
volume, refreshes stale indicators for the top N and prints the result.

Usage:
  python scripts/warm_indicators.py --top 50
  python scripts/warm_indicators.py --top 20 --invalidate
"""

import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from perpboard.clients import OkxRestClient, TickerFeed
from perpboard.config import get_settings
from perpboard.services import IndicatorScheduler, UnifiedStore
from perpboard.storage import PersistentIndicatorCache, open_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class _NoFundamentals:
    market_caps: dict = {}
    funding: dict = {}


async def main():
    parser = argparse.ArgumentParser(
        description="Refresh cached indicators for the most traded swaps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    settings = get_settings()
    parser.add_argument("--top", type=int, default=settings.priority_n,
                        help=f"Instruments to refresh (default: {settings.priority_n})")
    parser.add_argument("--invalidate", action="store_true",
                        help="Drop cached entries first so every instrument is recomputed")
    args = parser.parse_args()

    if args.top < 1:
        parser.error("--top must be >= 1")

    store = await open_store(settings.redis_url)
    cache = PersistentIndicatorCache(store)
    okx = OkxRestClient(
        base_url=settings.okx_rest_base,
        max_attempts=settings.fetch_max_attempts,
        backoff_base=settings.backoff_base,
        backoff_cap=settings.backoff_cap,
    )

    try:
        feed = TickerFeed(inst_type=settings.inst_type)
        rows = await okx.get_tickers(settings.inst_type)
        logger.info(f"Loaded {feed.seed(rows)} tickers")

        unified = UnifiedStore(feed, cache, _NoFundamentals(), quote=settings.quote_currency)
        priority = unified.priority_list(n=args.top, criterion="volume")

        if args.invalidate:
            await cache.invalidate(priority)

        scheduler = IndicatorScheduler(
            okx,
            cache,
            ttl=settings.indicator_ttl,
            item_delay=settings.item_delay,
            failure_cooldown=settings.failure_cooldown,
            request_delay=settings.request_delay,
            daily_limit=settings.daily_candle_limit,
            weekly_limit=settings.weekly_candle_limit,
            hourly_limit=settings.hourly_candle_limit,
        )
        result = await scheduler.run_pass(priority)
    finally:
        await okx.close()
        await store.close()

    if result is None:
        print("Pass did not run")
        return 1

    print("=" * 60)
    print(f"Instruments: {result.total}")
    print(f"Refreshed:   {len(result.refreshed)}")
    print(f"Fresh:       {len(result.skipped_fresh)}")
    print(f"Failed:      {len(result.failed)} {', '.join(result.failed)}")
    print(f"Duration:    {result.finished_at - result.started_at:.1f}s")
    print("=" * 60)
    return 0 if not result.failed else 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
