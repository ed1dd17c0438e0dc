"""Background services and the unified read model."""

from perpboard.services.fundamentals import FundamentalsService
from perpboard.services.indicator_scheduler import IndicatorScheduler
from perpboard.services.ticker_poller import TickerPoller
from perpboard.services.unified_store import UnifiedStore, ViewPage, ViewQuery

__all__ = [
    "FundamentalsService",
    "IndicatorScheduler",
    "TickerPoller",
    "UnifiedStore",
    "ViewPage",
    "ViewQuery",
]
