"""Tests for technical indicators."""

import math

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from perpboard.core.indicators import (
    IndicatorCalculator,
    change_over,
    period_change,
    rsi,
    rsi14,
)

from conftest import REFERENCE_CLOSES, make_candles

prices = st.floats(min_value=0.01, max_value=1e6, allow_nan=False, allow_infinity=False)


class TestRSI:
    """Tests for Wilder RSI."""

    def test_reference_series(self):
        """Known 20-point series matches the closed-form Wilder value."""
        expected = 100 / (1 + 0.5 * (13 / 14) ** 5)
        result = rsi14(REFERENCE_CLOSES)
        assert result == pytest.approx(expected, abs=1e-9)
        assert round(result, 2) == 74.34

    def test_strictly_increasing_is_100(self):
        closes = [float(i) for i in range(1, 31)]
        assert rsi14(closes) == 100.0

    def test_strictly_decreasing_is_0(self):
        closes = [float(i) for i in range(30, 0, -1)]
        assert rsi14(closes) == 0.0

    def test_flat_series_is_100(self):
        """No losses at all: avg_loss is zero."""
        assert rsi14([50.0] * 20) == 100.0

    def test_insufficient_data(self):
        assert rsi14(REFERENCE_CLOSES[:14]) is None
        assert rsi14([]) is None

    def test_exactly_period_plus_one(self):
        assert rsi14(REFERENCE_CLOSES[:15]) is not None

    def test_non_finite_values_dropped(self):
        """NaN entries are removed before counting."""
        closes = REFERENCE_CLOSES[:14] + [float("nan")]
        assert rsi14(closes) is None

        with_nan = REFERENCE_CLOSES[:10] + [float("nan")] + REFERENCE_CLOSES[10:]
        assert rsi14(with_nan) == pytest.approx(rsi14(REFERENCE_CLOSES))

    def test_short_period(self):
        result = rsi(REFERENCE_CLOSES, period=7)
        assert result is not None
        assert 0.0 <= result <= 100.0

    @settings(max_examples=200, deadline=None)
    @given(closes=st.lists(prices, min_size=15, max_size=80))
    def test_bounded(self, closes):
        """Property: RSI is always within [0, 100]."""
        result = rsi14(closes)
        assert result is not None
        assert 0.0 <= result <= 100.0

    @settings(max_examples=100, deadline=None)
    @given(closes=st.lists(prices, min_size=0, max_size=14))
    def test_short_input_is_none(self, closes):
        """Property: fewer than 15 closes never yields a value."""
        assert rsi14(closes) is None

    @settings(max_examples=100, deadline=None)
    @given(
        closes=st.lists(prices, min_size=15, max_size=60),
        factor=st.floats(min_value=0.1, max_value=100.0),
    )
    def test_scale_invariant(self, closes, factor):
        """Property: multiplying every close by a constant leaves RSI unchanged."""
        scaled = [c * factor for c in closes]
        assert rsi14(scaled) == pytest.approx(rsi14(closes), abs=1e-6)


class TestPeriodChange:
    """Tests for fractional change helpers."""

    def test_basic(self):
        assert period_change(100.0, 110.0) == pytest.approx(0.10)
        assert period_change(100.0, 90.0) == pytest.approx(-0.10)

    def test_non_positive_base(self):
        assert period_change(0.0, 10.0) is None
        assert period_change(-5.0, 10.0) is None

    def test_missing_or_non_finite(self):
        assert period_change(None, 10.0) is None
        assert period_change(10.0, None) is None
        assert period_change(float("nan"), 10.0) is None
        assert period_change(10.0, float("inf")) is None

    def test_change_over_week(self):
        """Seven bars inclusive: closes[-7] to closes[-1]."""
        assert change_over(REFERENCE_CLOSES, 7) == pytest.approx((112 - 108) / 108)

    def test_change_over_short_series(self):
        assert change_over([100.0, 101.0], 7) is None

    @given(older=prices, newer=prices)
    def test_sign_follows_direction(self, older, newer):
        """Property: change is positive iff the price rose."""
        result = period_change(older, newer)
        assert result is not None
        assert (result > 0) == (newer > older)
        assert math.isfinite(result)


class TestIndicatorCalculator:
    """Tests for IndicatorCalculator."""

    def test_compute_full_record(self):
        calc = IndicatorCalculator()
        record = calc.compute(
            "BTC-USDT-SWAP",
            make_candles(REFERENCE_CLOSES),
            make_candles([100.0, 102.5]),
            updated_at=1_700_000_000.0,
        )

        assert record.inst_id == "BTC-USDT-SWAP"
        assert record.rsi14 == 74.34
        assert record.rsi7 is not None
        assert record.change_4h_pct == 0.025
        assert record.change_7d_pct == round(4 / 108, 4)
        assert record.updated_at == 1_700_000_000.0

    def test_compute_with_insufficient_data(self):
        """Short histories produce a record with empty fields, not an error."""
        calc = IndicatorCalculator()
        record = calc.compute(
            "NEW-USDT-SWAP",
            make_candles([1.0, 1.1, 1.2]),
            make_candles([1.2]),
            updated_at=1.0,
        )

        assert record.rsi14 is None
        assert record.rsi7 is None
        assert record.change_4h_pct is None
        assert record.change_7d_pct is None

    def test_rsi7_available_before_rsi14(self):
        calc = IndicatorCalculator()
        record = calc.compute("X-USDT-SWAP", make_candles(REFERENCE_CLOSES[:10]), [], 1.0)

        assert record.rsi14 is None
        assert record.rsi7 is not None

    def test_weekly_rsi_and_hourly_changes(self):
        calc = IndicatorCalculator()
        record = calc.compute(
            "BTC-USDT-SWAP",
            make_candles(REFERENCE_CLOSES),
            updated_at=1.0,
            weekly=make_candles(REFERENCE_CLOSES),
            hourly=make_candles([100.0, 101.0, 102.0, 103.0, 104.0, 105.0]),
        )

        assert record.rsi_w14 == 74.34
        assert record.rsi_w7 == record.rsi7
        assert record.change_1h_pct == round(1 / 104, 4)
        assert record.change_4h_pct == round(4 / 101, 4)

    def test_hourly_preferred_over_4h_bars(self):
        calc = IndicatorCalculator()
        record = calc.compute(
            "BTC-USDT-SWAP",
            make_candles(REFERENCE_CLOSES),
            make_candles([100.0, 200.0]),
            1.0,
            hourly=make_candles([100.0, 101.0, 102.0, 103.0, 104.0, 105.0]),
        )

        assert record.change_4h_pct == round(4 / 101, 4)

    def test_short_hourly_series_uses_4h_bars(self):
        calc = IndicatorCalculator()
        record = calc.compute(
            "BTC-USDT-SWAP",
            make_candles(REFERENCE_CLOSES),
            make_candles([100.0, 102.5]),
            1.0,
            hourly=make_candles([100.0, 101.0]),
        )

        assert record.change_1h_pct == 0.01
        assert record.change_4h_pct == 0.025
        assert record.rsi_w14 is None
