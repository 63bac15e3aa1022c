"""
Tests for the indicator library.

Numeric contracts: NaN on insufficient data, Wilder RSI bounds,
exact MACD histogram identity, population-variance Bollinger bands.
"""
import math
import random

import pytest

from core import indicators
from tests.helpers import flat_then_declining, trending


def _nan(value):
    return isinstance(value, float) and math.isnan(value)


class TestInsufficientData:
    @pytest.mark.parametrize("period", [1, 5, 14, 26, 50])
    def test_sma_and_ema_nan_below_period(self, period):
        series = [100.0 + i for i in range(period - 1)]
        assert _nan(indicators.sma(series, period))
        assert _nan(indicators.ema(series, period))

    @pytest.mark.parametrize("period", [2, 14, 21])
    def test_rsi_needs_period_plus_one(self, period):
        assert _nan(indicators.rsi([100.0] * period, period))
        assert not _nan(indicators.rsi([100.0 + i for i in range(period + 1)], period))

    def test_macd_nan_without_slow_window(self):
        result = indicators.macd([100, 101, 102])
        assert _nan(result.macd)
        assert _nan(result.signal)
        assert _nan(result.histogram)

    def test_macd_signal_nan_when_aligned_series_short(self):
        # 30 prices -> only 5 aligned MACD points, fewer than the 9-period signal
        result = indicators.macd(trending(count=30))
        assert not _nan(result.macd)
        assert _nan(result.signal)
        assert _nan(result.histogram)

    def test_roc_and_bands(self):
        assert _nan(indicators.roc([1, 2, 3], 10))
        bands = indicators.bollinger_bands([1.0] * 5, period=20)
        assert _nan(bands.upper) and _nan(bands.middle) and _nan(bands.lower)

    def test_empty_series(self):
        assert _nan(indicators.sma([], 3))
        assert _nan(indicators.rsi([], 14))
        assert _nan(indicators.momentum([], 14))


class TestValues:
    def test_sma_uses_last_window(self):
        assert indicators.sma([1, 2, 3, 4, 5], 3) == pytest.approx(4.0)

    def test_ema_seeded_with_sma(self):
        # Seed = mean(1,2,3) = 2; k = 0.5; next = 4*0.5 + 2*0.5 = 3
        assert indicators.ema([1, 2, 3, 4], 3) == pytest.approx(3.0)

    def test_ema_series_matches_scalar(self):
        prices = trending(count=40)
        series = indicators.ema_series(prices, 12)
        assert all(_nan(v) for v in series[:11])
        assert series[-1] == pytest.approx(indicators.ema(prices, 12))

    def test_rsi_no_losses_is_100(self):
        assert indicators.rsi([100.0 + i for i in range(20)], 14) == 100.0

    def test_rsi_monotonic_series(self):
        assert indicators.rsi([100.0 + i for i in range(30)], 14) > 70
        assert indicators.rsi([100.0 - i for i in range(30)], 14) < 30

    def test_rsi_mixed_series_mid_range(self):
        prices = [100 + (0.1 if i % 2 == 0 else -0.1) for i in range(30)]
        assert 40 < indicators.rsi(prices, 14) < 60

    def test_bollinger_population_std(self):
        bands = indicators.bollinger_bands([2, 4, 4, 4, 5, 5, 7, 9], period=8, k=2)
        # population std of this classic sample is exactly 2
        assert bands.middle == pytest.approx(5.0)
        assert bands.upper == pytest.approx(9.0)
        assert bands.lower == pytest.approx(1.0)

    def test_roc_percent(self):
        assert indicators.roc([100, 105, 110], 2) == pytest.approx(10.0)

    def test_momentum_delta(self):
        prices = [float(i) for i in range(1, 21)]
        assert indicators.momentum(prices, 14) == pytest.approx(20 - 7)


class TestProperties:
    def test_rsi_bounded_for_random_series(self):
        rng = random.Random(42)
        for _ in range(50):
            length = rng.randint(15, 120)
            prices = [100.0]
            for _ in range(length - 1):
                prices.append(max(0.01, prices[-1] * (1 + rng.uniform(-0.05, 0.05))))
            value = indicators.rsi(prices, 14)
            assert 0.0 <= value <= 100.0

    def test_macd_histogram_identity_is_exact(self):
        rng = random.Random(7)
        for _ in range(25):
            prices = [100 + rng.uniform(-10, 10) for _ in range(rng.randint(40, 200))]
            result = indicators.macd(prices)
            assert result.histogram == result.macd - result.signal

    def test_pure_and_restartable(self):
        prices = trending(count=80)
        snapshot = list(prices)
        first = indicators.macd(prices)
        second = indicators.macd(prices)
        assert first == second
        assert prices == snapshot


def test_flat_then_sharp_decline_is_oversold_and_bearish():
    # 30 flat points then 30 declining: a 30-point series leaves the MACD
    # signal undefined (see test_macd_signal_nan_when_aligned_series_short)
    closes =flat_then_declining(flat=100.0, flat_points=30, decline_points=30, step=1.5)

    assert indicators.rsi(closes, 14) < 30
    result = indicators.macd(closes)
    assert result.histogram < 0
    assert result.macd < 0
