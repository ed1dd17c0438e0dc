"""Pure market-data logic: models, indicators, concurrency primitives.

Nothing in this package performs I/O (no network, no Redis).
"""

from perpboard.core.indicators import (
    IndicatorCalculator,
    change_over,
    period_change,
    rsi,
    rsi14,
)
from perpboard.core.models import (
    CacheEntry,
    Candle,
    CompositeRecord,
    FeedState,
    FundingInfo,
    IndicatorRecord,
    MarketCapInfo,
    PassResult,
    SchedulerStatus,
    Ticker,
    base_symbol,
)
from perpboard.core.single_flight import SingleFlight

__all__ = [
    "IndicatorCalculator",
    "change_over",
    "period_change",
    "rsi",
    "rsi14",
    "CacheEntry",
    "Candle",
    "CompositeRecord",
    "FeedState",
    "FundingInfo",
    "IndicatorRecord",
    "MarketCapInfo",
    "PassResult",
    "SchedulerStatus",
    "Ticker",
    "base_symbol",
    "SingleFlight",
]
