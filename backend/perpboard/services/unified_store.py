"""Unified read model.

Fuses the live ticker map, the indicator cache and the fundamentals maps
into per-instrument composite records, and computes the derived views the
dashboard shows (priority ranking, filters, movers, tier statistics).

Nothing here is stored: every read recomputes from the sources, so a
record reflects whatever each source held at read time. The store never
writes to any source except through ``invalidate``, which forwards to the
indicator cache.
"""

import logging
from typing import Literal, Mapping, Protocol

from pydantic import BaseModel, Field

from perpboard.core.models import (
    CacheEntry,
    CompositeRecord,
    FundingInfo,
    MarketCapInfo,
    Ticker,
    base_symbol,
)
from perpboard.storage.indicator_cache import PersistentIndicatorCache

logger = logging.getLogger(__name__)

PriorityCriterion = Literal["volume", "market_cap"]
MoverWindow = Literal["1h", "4h", "24h", "7d"]

# (label, lowest rank, highest rank); None bounds mean open-ended or unranked
RANK_TIERS: list[tuple[str, int | None, int | None]] = [
    ("1-20", 1, 20),
    ("21-50", 21, 50),
    ("51-100", 51, 100),
    ("101-500", 101, 500),
    (">500", 501, None),
]

MOVER_FIELDS = {
    "1h": "change_1h_pct",
    "4h": "change_4h_pct",
    "24h": "change_24h_pct",
    "7d": "change_7d_pct",
}

OVERBOUGHT = 75.0
OVERSOLD = 25.0

SORTABLE_FIELDS = frozenset({
    "inst_id",
    "symbol",
    "last_price",
    "change_24h_pct",
    "volume_quote_24h",
    "rsi14",
    "rsi7",
    "rsi_w14",
    "rsi_w7",
    "change_1h_pct",
    "change_4h_pct",
    "change_7d_pct",
    "rank",
    "market_cap",
    "funding_rate",
    "funding_apr",
})


class TickerSource(Protocol):
    @property
    def tickers(self) -> Mapping[str, Ticker]: ...


class FundamentalsSource(Protocol):
    market_caps: dict[str, MarketCapInfo]
    funding: dict[str, FundingInfo]


# =============================================================================
# Filters
# =============================================================================


def rsi_matches(value: float | None, expression: str) -> bool:
    """
    Evaluate an RSI filter expression.

    Accepted forms: ``"30~70"`` (inclusive range, either bound may be
    omitted), ``"<30"``, ``">70"``. A missing value never matches.

    Raises:
        ValueError: Unrecognised expression
    """
    expr = expression.strip()
    if value is None:
        _parse_rsi_expression(expr)
        return False
    low, high, inclusive = _parse_rsi_expression(expr)
    if inclusive:
        return low <= value <= high
    return low < value < high


def _parse_rsi_expression(expr: str) -> tuple[float, float, bool]:
    try:
        # comparison prefixes first: ">-5" is a bound, not a range
        if expr.startswith("<"):
            return float("-inf"), float(expr[1:]), False
        if expr.startswith(">"):
            return float(expr[1:]), float("inf"), False
        if expr.startswith("~"):
            return 0.0, float(expr[1:]), True
        for sep in ("~", "-"):
            # search from 1 so a leading minus stays with the low bound
            pos = expr.find(sep, 1)
            if pos > 0:
                return float(expr[:pos]), float(expr[pos + 1:] or 100), True
    except ValueError:
        pass
    raise ValueError(f"Invalid RSI filter: {expr!r}")


def rank_tier(rank: int | None) -> str:
    """Tier label for a market-cap rank; unranked instruments fall in ``>500``."""
    if rank is None:
        return ">500"
    for label, low, high in RANK_TIERS:
        if (low is None or rank >= low) and (high is None or rank <= high):
            return label
    return ">500"


def _mean(values: list[float | None]) -> float | None:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


class ViewQuery(BaseModel):
    """Table query: filters, sort and pagination."""

    search: str | None = None
    favorites: list[str] | None = None
    rank_tier: Literal["1-20", "21-50", "51-100", "101-500", ">500"] | None = None
    rsi14: str | None = None
    rsi7: str | None = None
    funding: Literal["positive", "negative"] | None = None
    sort_by: str = "volume_quote_24h"
    descending: bool = True
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ViewPage(BaseModel):
    total: int
    items: list[CompositeRecord]


# =============================================================================
# Store
# =============================================================================


class UnifiedStore:
    """Read-only composite view over feed, cache and fundamentals."""

    def __init__(
        self,
        feed: TickerSource,
        cache: PersistentIndicatorCache,
        fundamentals: FundamentalsSource,
        quote: str = "USDT",
        priority_n: int = 50,
        priority_criterion: PriorityCriterion = "volume",
    ):
        self.feed = feed
        self.cache = cache
        self.fundamentals = fundamentals
        self.quote = quote
        self.priority_criterion = priority_criterion
        self._priority_n = priority_n

    @property
    def priority_n(self) -> int:
        return self._priority_n

    def set_priority_n(self, n: int) -> None:
        """Change how many instruments each indicator pass covers."""
        if n < 1:
            raise ValueError("priority N must be >= 1")
        self._priority_n = n
        logger.info(f"Priority N set to {n}")

    def _quoted_tickers(self) -> list[Ticker]:
        marker = f"-{self.quote}-"
        return [t for t in list(self.feed.tickers.values()) if marker in t.inst_id]

    # ------------------------------------------------------------------
    # Priority
    # ------------------------------------------------------------------

    def priority_list(
        self, n: int | None = None, criterion: PriorityCriterion | None = None
    ) -> list[str]:
        """
        Instruments most worth refreshing, best first.

        ``volume`` ranks by 24h quote volume (descending, missing last);
        ``market_cap`` ranks by market-cap rank (ascending, unranked last).
        """
        n = self._priority_n if n is None else n
        criterion = criterion or self.priority_criterion
        tickers = self._quoted_tickers()

        if criterion == "market_cap":
            market_caps = self.fundamentals.market_caps

            def key(t: Ticker):
                info = market_caps.get(t.base_symbol)
                rank = info.rank if info is not None else None
                return (rank is None, rank or 0, t.inst_id)
        else:
            def key(t: Ticker):
                vol = t.volume_quote_24h
                return (vol is None, -(vol or 0.0), t.inst_id)

        tickers.sort(key=key)
        return [t.inst_id for t in tickers[:max(n, 0)]]

    # ------------------------------------------------------------------
    # Composite records
    # ------------------------------------------------------------------

    def _compose(self, ticker: Ticker, entry: CacheEntry | None) -> CompositeRecord:
        symbol = ticker.base_symbol
        cap = self.fundamentals.market_caps.get(symbol)
        funding = self.fundamentals.funding.get(ticker.inst_id)
        record = entry.record if entry is not None else None

        return CompositeRecord(
            inst_id=ticker.inst_id,
            symbol=symbol,
            last_price=ticker.last_price,
            change_24h_pct=ticker.change_24h_pct,
            volume_quote_24h=ticker.volume_quote_24h,
            observed_at=ticker.observed_at,
            rsi14=record.rsi14 if record else None,
            rsi7=record.rsi7 if record else None,
            rsi_w14=record.rsi_w14 if record else None,
            rsi_w7=record.rsi_w7 if record else None,
            change_1h_pct=record.change_1h_pct if record else None,
            change_4h_pct=record.change_4h_pct if record else None,
            change_7d_pct=record.change_7d_pct if record else None,
            indicators_updated_at=entry.updated_at if entry else None,
            rank=cap.rank if cap else None,
            market_cap=cap.market_cap if cap else None,
            logo=cap.logo if cap else None,
            sparkline=list(cap.sparkline) if cap else [],
            funding_rate=funding.funding_rate if funding else None,
            funding_interval_hours=funding.settlement_interval_hours if funding else None,
            funding_apr=funding.apr if funding else None,
        )

    async def records(self, inst_ids: list[str] | None = None) -> list[CompositeRecord]:
        """
        Composite records for quote-currency instruments on the feed.

        Args:
            inst_ids: Restrict to these instruments (unknown IDs are skipped)
        """
        tickers = self._quoted_tickers()
        if inst_ids is not None:
            wanted = set(inst_ids)
            tickers = [t for t in tickers if t.inst_id in wanted]

        entries = await self.cache.get_many([t.inst_id for t in tickers])
        return [self._compose(t, entries.get(t.inst_id)) for t in tickers]

    async def get(self, inst_id: str) -> CompositeRecord | None:
        ticker = self.feed.tickers.get(inst_id)
        if ticker is None:
            return None
        return self._compose(ticker, await self.cache.get(inst_id))

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    async def view(self, query: ViewQuery) -> ViewPage:
        """
        Filter, sort and paginate composite records.

        Raises:
            ValueError: Unknown sort column or malformed RSI expression
        """
        if query.sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by {query.sort_by!r}")

        rows = await self.records(query.favorites)

        if query.search:
            term = query.search.lower()
            rows = [r for r in rows if term in r.inst_id.lower()]
        if query.rank_tier:
            rows = [r for r in rows if rank_tier(r.rank) == query.rank_tier]
        if query.rsi14:
            rows = [r for r in rows if rsi_matches(r.rsi14, query.rsi14)]
        if query.rsi7:
            rows = [r for r in rows if rsi_matches(r.rsi7, query.rsi7)]
        if query.funding == "positive":
            rows = [r for r in rows if r.funding_rate is not None and r.funding_rate > 0]
        elif query.funding == "negative":
            rows = [r for r in rows if r.funding_rate is not None and r.funding_rate < 0]

        present = [r for r in rows if getattr(r, query.sort_by) is not None]
        missing = [r for r in rows if getattr(r, query.sort_by) is None]
        present.sort(key=lambda r: getattr(r, query.sort_by), reverse=query.descending)
        missing.sort(key=lambda r: r.inst_id)
        ordered = present + missing

        return ViewPage(
            total=len(ordered),
            items=ordered[query.offset:query.offset + query.limit],
        )

    async def top_movers(self, window: MoverWindow, limit: int = 5) -> dict[str, list[CompositeRecord]]:
        """Biggest gainers and losers over ``window``; rows without the value are left out."""
        field = MOVER_FIELDS.get(window)
        if field is None:
            raise ValueError(f"Unknown window: {window!r}")

        rows = [r for r in await self.records() if getattr(r, field) is not None]
        rows.sort(key=lambda r: getattr(r, field), reverse=True)
        return {
            "gainers": rows[:limit],
            "losers": list(reversed(rows[-limit:])) if limit > 0 else [],
        }

    async def tier_stats(self) -> list[dict]:
        """Member count and metric averages per market-cap tier."""
        rows = await self.records()
        stats = []
        for label, _, _ in RANK_TIERS:
            members = [r for r in rows if rank_tier(r.rank) == label]
            stats.append({
                "tier": label,
                "count": len(members),
                "avg_rsi14": _mean([r.rsi14 for r in members]),
                "avg_rsi7": _mean([r.rsi7 for r in members]),
                "avg_rsi_w14": _mean([r.rsi_w14 for r in members]),
                "avg_rsi_w7": _mean([r.rsi_w7 for r in members]),
                "avg_change_1h_pct": _mean([r.change_1h_pct for r in members]),
                "avg_change_24h_pct": _mean([r.change_24h_pct for r in members]),
                "avg_change_4h_pct": _mean([r.change_4h_pct for r in members]),
                "avg_change_7d_pct": _mean([r.change_7d_pct for r in members]),
            })
        return stats

    async def rsi_averages(self, top: int = 100) -> dict[str, float | None]:
        """Average RSI across the ``top`` instruments by market cap."""
        rows = [r for r in await self.records() if r.market_cap]
        rows.sort(key=lambda r: r.market_cap, reverse=True)
        rows = rows[:top]
        return {
            "count": len(rows),
            "avg_rsi14": _mean([r.rsi14 for r in rows]),
            "avg_rsi7": _mean([r.rsi7 for r in rows]),
            "avg_rsi_w14": _mean([r.rsi_w14 for r in rows]),
            "avg_rsi_w7": _mean([r.rsi_w7 for r in rows]),
        }

    async def quick_filter_counts(self) -> dict[str, int]:
        """Instruments with both RSIs above 75 (overbought) or below 25 (oversold)."""
        rows = await self.records()
        overbought = sum(
            1 for r in rows
            if r.rsi7 is not None and r.rsi14 is not None
            and r.rsi7 > OVERBOUGHT and r.rsi14 > OVERBOUGHT
        )
        oversold = sum(
            1 for r in rows
            if r.rsi7 is not None and r.rsi14 is not None
            and r.rsi7 < OVERSOLD and r.rsi14 < OVERSOLD
        )
        return {"overbought": overbought, "oversold": oversold}

    async def invalidate(self, inst_ids: list[str] | None = None) -> int:
        """Force cached indicators stale so the next pass recomputes them."""
        return await self.cache.invalidate(inst_ids)
