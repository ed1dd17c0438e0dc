"""Shared fixtures."""

import pytest

from perpboard.core.models import Candle, Ticker
from perpboard.storage import MemoryStore, PersistentIndicatorCache

DAY_MS = 24 * 60 * 60 * 1000

# 20 daily closes with a known Wilder RSI(14) of 100 / (1 + 0.5 * (13/14)**5)
REFERENCE_CLOSES = [
    100, 102, 101, 103, 102, 104, 103, 105, 104, 106,
    105, 107, 106, 108, 107, 108, 109, 110, 111, 112,
]


def make_candles(closes, start_ms: int = 1_700_000_000_000, step_ms: int = DAY_MS) -> list[Candle]:
    """Chronological candles whose OHLC all equal the close."""
    return [
        Candle(
            timestamp=start_ms + i * step_ms,
            open=float(c),
            high=float(c),
            low=float(c),
            close=float(c),
            volume=1.0,
        )
        for i, c in enumerate(closes)
    ]


HOURLY_CLOSES = [100.0, 101.0, 102.0, 103.0, 104.0, 105.0]


class FakeCandleSource:
    """Candle source recording calls.

    ``errors`` fails every request for an instrument; ``bar_errors`` fails
    one bar size for all instruments.
    """

    def __init__(self, daily=None, four_hour=None, weekly=None, hourly=None,
                 errors=None, bar_errors=None):
        self.closes = {
            "1D": daily if daily is not None else REFERENCE_CLOSES,
            "4H": four_hour if four_hour is not None else [100.0, 102.0],
            "1W": weekly if weekly is not None else REFERENCE_CLOSES,
            "1H": hourly if hourly is not None else HOURLY_CLOSES,
        }
        self.errors = errors or {}
        self.bar_errors = bar_errors or {}
        self.calls: list[tuple[str, str, int]] = []

    async def get_candles(self, inst_id, bar="1D", limit=60):
        self.calls.append((inst_id, bar, limit))
        if inst_id in self.errors:
            raise self.errors[inst_id]
        if bar in self.bar_errors:
            raise self.bar_errors[bar]
        return make_candles(self.closes[bar])

    def fetched(self) -> list[str]:
        """Instrument IDs that had daily candles fetched, in order."""
        return [inst_id for inst_id, bar, _ in self.calls if bar == "1D"]

    def bars(self, inst_id: str) -> list[str]:
        """Bar sizes requested for one instrument, in order."""
        return [bar for i, bar, _ in self.calls if i == inst_id]


class FakeFeed:
    """Ticker source backed by a plain dict."""

    def __init__(self, tickers: list[Ticker] | None = None):
        self.tickers = {t.inst_id: t for t in tickers or []}


class FakeFundamentals:
    def __init__(self, market_caps=None, funding=None):
        self.market_caps = market_caps or {}
        self.funding = funding or {}


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def indicator_cache(memory_store):
    return PersistentIndicatorCache(memory_store)


@pytest.fixture
def sleeps():
    """List that a recording sleep appends to."""
    return []


@pytest.fixture
def record_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep
