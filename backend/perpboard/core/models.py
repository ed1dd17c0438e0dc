"""Market-data models.

Hot path (feed updates, candle math) uses ``@dataclass(slots=True)`` with
floats and epoch timestamps. Records that cross a boundary (persisted
indicator records, API output) are Pydantic models.
"""

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict


class FeedState(str, Enum):
    """Push connection state."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class SchedulerStatus(str, Enum):
    """Indicator scheduler state."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


def base_symbol(inst_id: str) -> str:
    """BTC-USDT-SWAP -> BTC."""
    return inst_id.split("-")[0]


@dataclass(slots=True)
class Ticker:
    """Latest known state of one instrument, merged from feed deltas."""

    inst_id: str
    last_price: float
    open_24h: float | None = None
    volume_quote_24h: float | None = None
    observed_at: int = 0  # epoch ms

    @property
    def base_symbol(self) -> str:
        return base_symbol(self.inst_id)

    @property
    def change_24h_pct(self) -> float | None:
        """Fractional change against the 24h open, None when unknown."""
        if self.open_24h is None or self.open_24h <= 0 or self.last_price <= 0:
            return None
        return (self.last_price - self.open_24h) / self.open_24h


@dataclass(slots=True)
class Candle:
    """OHLCV bar. ``timestamp`` is the bar open time in epoch ms."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


class IndicatorRecord(BaseModel):
    """Indicators computed for one instrument in a scheduler pass."""

    model_config = ConfigDict(frozen=True)

    inst_id: str
    rsi14: float | None = None
    rsi7: float | None = None
    rsi_w14: float | None = None  # weekly bars
    rsi_w7: float | None = None
    change_1h_pct: float | None = None
    change_4h_pct: float | None = None
    change_7d_pct: float | None = None
    updated_at: float  # epoch seconds


@dataclass(slots=True)
class CacheEntry:
    """Cached indicator record with its write timestamp."""

    record: IndicatorRecord
    updated_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.updated_at < ttl


@dataclass(slots=True)
class MarketCapInfo:
    """Fundamentals for a base symbol (from the market-cap provider)."""

    symbol: str
    rank: int | None = None
    market_cap: float | None = None
    logo: str | None = None
    sparkline: list[float] = field(default_factory=list)


DEFAULT_SETTLEMENT_HOURS = 8


@dataclass(slots=True)
class FundingInfo:
    """Funding state for a perpetual instrument."""

    inst_id: str
    funding_rate: float
    next_funding_rate: float | None = None
    funding_time: int = 0
    next_funding_time: int = 0
    settlement_interval_hours: int = DEFAULT_SETTLEMENT_HOURS

    @property
    def apr(self) -> float:
        """Annualized funding as a fraction (rate * settlements per year)."""
        interval = self.settlement_interval_hours or DEFAULT_SETTLEMENT_HOURS
        return self.funding_rate * (365 * 24) / interval


class CompositeRecord(BaseModel):
    """Fused per-instrument view. Derived on every read, never persisted."""

    inst_id: str
    symbol: str
    last_price: float
    change_24h_pct: float | None = None
    volume_quote_24h: float | None = None
    observed_at: int = 0

    rsi14: float | None = None
    rsi7: float | None = None
    rsi_w14: float | None = None
    rsi_w7: float | None = None
    change_1h_pct: float | None = None
    change_4h_pct: float | None = None
    change_7d_pct: float | None = None
    indicators_updated_at: float | None = None

    rank: int | None = None
    market_cap: float | None = None
    logo: str | None = None
    sparkline: list[float] = []

    funding_rate: float | None = None
    funding_interval_hours: int | None = None
    funding_apr: float | None = None


@dataclass(slots=True)
class PassResult:
    """Outcome of one indicator scheduler pass."""

    total: int
    started_at: float
    finished_at: float = 0.0
    refreshed: list[str] = field(default_factory=list)
    skipped_fresh: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    aborted: bool = False
