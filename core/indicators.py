"""
spot-autopilot Core: Technical Indicators

Pure functions over closing prices ordered oldest -> newest.
Every function returns NaN when the series is too short to compute a
value; callers must treat NaN as "insufficient data", never as zero.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence

NAN = float("nan")


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


def is_missing(value: float) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def sma(prices: Sequence[float], period: int) -> float:
    """Simple moving average of the last `period` prices."""
    if period <= 0 or len(prices) < period:
        return NAN
    window = prices[-period:]
    return sum(window) / period


def ema(prices: Sequence[float], period: int) -> float:
    """
    Exponential moving average seeded with the SMA of the first `period` prices.

    Recurrence: ema = price * k + ema * (1 - k), k = 2 / (period + 1)
    """
    if period <= 0 or len(prices) < period:
        return NAN
    k = 2.0 / (period + 1)
    value = sum(prices[:period]) / period
    for price in prices[period:]:
        value = price * k + value * (1 - k)
    return value


def ema_series(prices: Sequence[float], period: int) -> List[float]:
    """
    EMA at every index in a single pass.

    result[i] is NaN until index period-1, where it holds the SMA seed;
    afterwards it is the EMA including prices[i]. The last element equals
    ema(prices, period).
    """
    out: List[float] = [NAN] * len(prices)
    if period <= 0 or len(prices) < period:
        return out
    k = 2.0 / (period + 1)
    value = sum(prices[:period]) / period
    out[period - 1] = value
    for i in range(period, len(prices)):
        value = prices[i] * k + value * (1 - k)
        out[i] = value
    return out


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """
    Wilder's Relative Strength Index in [0, 100].

    Seeds average gain/loss with the simple mean of the first `period`
    changes, then applies Wilder smoothing over the rest. A series with no
    losses returns exactly 100.
    """
    if period <= 0 or len(prices) < period + 1:
        return NAN

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change

    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(prices)):
        change = prices[i] - prices[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """
    MACD line, signal line and histogram.

    The signal line is an EMA over the MACD series restricted to indices
    where both the fast and slow EMAs are defined. When that aligned series
    is shorter than `signal`, signal and histogram are NaN.
    """
    macd_value = ema(prices, fast) - ema(prices, slow)
    if is_missing(macd_value):
        return MACDResult(NAN, NAN, NAN)

    fast_series = ema_series(prices, fast)
    slow_series = ema_series(prices, slow)
    aligned = [
        f - s
        for f, s in zip(fast_series, slow_series)
        if not (math.isnan(f) or math.isnan(s))
    ]
    signal_value = ema(aligned, signal)
    if is_missing(signal_value):
        return MACDResult(macd_value, NAN, NAN)
    return MACDResult(macd_value, signal_value, macd_value - signal_value)


def bollinger_bands(prices: Sequence[float], period: int = 20, k: float = 2.0) -> BollingerBands:
    """Bands at +/- k population standard deviations around the SMA."""
    middle = sma(prices, period)
    if is_missing(middle):
        return BollingerBands(NAN, NAN, NAN)
    window = prices[-period:]
    variance = sum((p - middle) ** 2 for p in window) / period
    std = math.sqrt(variance)
    return BollingerBands(middle + k * std, middle, middle - k * std)


def roc(prices: Sequence[float], period: int = 10) -> float:
    """Rate of change in percent over `period` bars."""
    if period <= 0 or len(prices) < period + 1:
        return NAN
    base = prices[-1 - period]
    if base == 0:
        return NAN
    return (prices[-1] - base) / base * 100.0


def momentum(prices: Sequence[float], period: int = 14) -> float:
    """Absolute price delta across the last `period` bars (inclusive)."""
    if period <= 0 or len(prices) < period:
        return NAN
    return prices[-1] - prices[-period]
