"""Technical indicators for the dashboard (pure math, no I/O).

RSI uses the classic Wilder formulation: the first average gain/loss is the
simple mean of the first ``period`` deltas, later values are smoothed with
``avg = (avg * (period - 1) + value) / period``.
"""

import math
from typing import Sequence

import numpy as np

from perpboard.core.models import Candle, IndicatorRecord

RSI_PERIOD = 14
RSI_SHORT_PERIOD = 7
WEEK_BARS = 7


def _finite_array(values: Sequence[float]) -> np.ndarray:
    """Convert to float64 and drop NaN/inf entries."""
    arr = np.asarray(values, dtype=np.float64)
    return arr[np.isfinite(arr)]


def rsi(closes: Sequence[float], period: int = RSI_PERIOD) -> float | None:
    """
    Calculate the Relative Strength Index of the latest close.

    Args:
        closes: Close prices in chronological order
        period: Lookback period

    Returns:
        RSI in [0, 100], or None if fewer than ``period + 1`` closes
    """
    arr = _finite_array(closes)
    if len(arr) < period + 1:
        return None

    deltas = np.diff(arr)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def rsi14(closes: Sequence[float]) -> float | None:
    """RSI over 14 periods. Needs at least 15 closes."""
    return rsi(closes, RSI_PERIOD)


def period_change(older: float | None, newer: float | None) -> float | None:
    """
    Fractional change from ``older`` to ``newer``.

    Returns None unless both values are finite and ``older`` is positive.
    """
    if older is None or newer is None:
        return None
    if not (math.isfinite(older) and math.isfinite(newer)) or older <= 0:
        return None
    return (newer - older) / older


def change_over(closes: Sequence[float], bars: int) -> float | None:
    """Change from the close ``bars`` entries back (inclusive) to the last close."""
    if bars < 2 or len(closes) < bars:
        return None
    return period_change(closes[-bars], closes[-1])


def _round(value: float | None, digits: int) -> float | None:
    return None if value is None else round(value, digits)


class IndicatorCalculator:
    """Computes an instrument's indicator record from its candles."""

    def __init__(
        self,
        rsi_period: int = RSI_PERIOD,
        rsi_short_period: int = RSI_SHORT_PERIOD,
        week_bars: int = WEEK_BARS,
    ):
        self.rsi_period = rsi_period
        self.rsi_short_period = rsi_short_period
        self.week_bars = week_bars

    def compute(
        self,
        inst_id: str,
        daily: Sequence[Candle],
        four_hour: Sequence[Candle] = (),
        updated_at: float = 0.0,
        *,
        weekly: Sequence[Candle] = (),
        hourly: Sequence[Candle] = (),
    ) -> IndicatorRecord:
        """
        Build an IndicatorRecord.

        The 1h and 4h changes come from hourly bars when there are enough of
        them; otherwise the 4h change falls back to the last two 4H bars.

        Args:
            inst_id: Instrument the candles belong to
            daily: Daily candles, chronological
            four_hour: 4H candles, chronological (the last two are used)
            updated_at: Epoch seconds stamped on the record
            weekly: Weekly candles, chronological
            hourly: 1H candles, chronological

        Returns:
            IndicatorRecord; fields lacking data are None
        """
        closes = _closes(daily)
        weekly_closes = _closes(weekly)
        hourly_closes = _closes(hourly)

        change_1h = change_over(hourly_closes, 2)
        change_4h = change_over(hourly_closes, 5)
        if change_4h is None:
            change_4h = change_over(_closes(four_hour), 2)

        return IndicatorRecord(
            inst_id=inst_id,
            rsi14=_round(rsi(closes, self.rsi_period), 2),
            rsi7=_round(rsi(closes, self.rsi_short_period), 2),
            rsi_w14=_round(rsi(weekly_closes, self.rsi_period), 2),
            rsi_w7=_round(rsi(weekly_closes, self.rsi_short_period), 2),
            change_1h_pct=_round(change_1h, 4),
            change_4h_pct=_round(change_4h, 4),
            change_7d_pct=_round(change_over(closes, self.week_bars), 4),
            updated_at=updated_at,
        )


def _closes(candles: Sequence[Candle]) -> list[float]:
    return [c.close for c in candles if math.isfinite(c.close)]
