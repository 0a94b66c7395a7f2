"""
Technical Indicator Library - Pure numpy functions over price series.

Every function takes plain sequences or numpy arrays and returns a
*compact* float64 array: the first element corresponds to the first bar
for which the indicator is defined, the last element to the most recent
bar. Insufficient history yields an empty array, never an exception, so
callers read "no values" as "no signal yet".

Alignment, for ``n`` input bars:
    sma/ema/bollinger   n - period + 1
    rsi                 n - period
    true_range          n - 1
    atr                 n - period
    stochastic %K       n - k_period + 1   (%D: len(%K) - d_period + 1)
    macd line           n - slow + 1       (signal / histogram shorter)
"""

from __future__ import annotations

from typing import Dict, Sequence, Tuple, Union

import numpy as np

ArrayLike = Union[Sequence[float], np.ndarray]

_EMPTY = np.array([], dtype=np.float64)


def _arr(values: ArrayLike) -> np.ndarray:
    return np.asarray(values, dtype=np.float64)


def sma(values: ArrayLike, period: int) -> np.ndarray:
    """Simple moving average over a rolling window."""
    data = _arr(values)
    if period <= 0 or len(data) < period:
        return _EMPTY.copy()
    csum = np.cumsum(np.insert(data, 0, 0.0))
    return (csum[period:] - csum[:-period]) / period


def ema(values: ArrayLike, period: int) -> np.ndarray:
    """
    Exponential moving average seeded by the SMA of the first ``period``
    points, then ``ema[i] = price[i] * k + ema[i-1] * (1 - k)`` with
    ``k = 2 / (period + 1)``.
    """
    data = _arr(values)
    if period <= 0 or len(data) < period:
        return _EMPTY.copy()
    k = 2.0 / (period + 1)
    out = np.empty(len(data) - period + 1, dtype=np.float64)
    out[0] = data[:period].mean()
    for i, price in enumerate(data[period:], start=1):
        out[i] = price * k + out[i - 1] * (1 - k)
    return out


def rsi(values: ArrayLike, period: int = 14) -> np.ndarray:
    """
    Wilder RSI. The first value uses plain averages of the first ``period``
    deltas; later values smooth with ``(avg * (period - 1) + current) / period``.
    A window with no losses reads 100.
    """
    data = _arr(values)
    if period <= 0 or len(data) <= period:
        return _EMPTY.copy()
    deltas = np.diff(data)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    out = np.empty(len(deltas) - period + 1, dtype=np.float64)
    out[0] = _rsi_value(avg_gain, avg_loss)
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        out[i - period + 1] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(
    values: ArrayLike,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> Dict[str, np.ndarray]:
    """
    MACD line = EMA(fast) - EMA(slow) aligned on the slow EMA; signal line
    = EMA(MACD, signal); histogram = MACD - signal on the shared tail.
    """
    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    if len(fast_ema) == 0 or len(slow_ema) == 0:
        return {"macd": _EMPTY.copy(), "signal": _EMPTY.copy(), "histogram": _EMPTY.copy()}
    n = min(len(fast_ema), len(slow_ema))
    line = fast_ema[-n:] - slow_ema[-n:]
    sig = ema(line, signal)
    hist = line[-len(sig):] - sig if len(sig) else _EMPTY.copy()
    return {"macd": line, "signal": sig, "histogram": hist}


def bollinger_bands(
    values: ArrayLike,
    period: int = 20,
    std_dev: float = 2.0,
) -> Dict[str, np.ndarray]:
    """Middle SMA plus/minus ``std_dev`` population standard deviations."""
    data = _arr(values)
    middle = sma(data, period)
    if len(middle) == 0:
        return {"upper": _EMPTY.copy(), "middle": _EMPTY.copy(), "lower": _EMPTY.copy()}
    windows = np.lib.stride_tricks.sliding_window_view(data, period)
    sigma = windows.std(axis=1)
    return {
        "upper": middle + std_dev * sigma,
        "middle": middle,
        "lower": middle - std_dev * sigma,
    }


def stochastic(
    highs: ArrayLike,
    lows: ArrayLike,
    closes: ArrayLike,
    k_period: int = 14,
    d_period: int = 3,
) -> Tuple[np.ndarray, np.ndarray]:
    """%K over ``k_period`` bars and %D as the SMA of %K."""
    h, lo, c = _arr(highs), _arr(lows), _arr(closes)
    n = min(len(h), len(lo), len(c))
    if k_period <= 0 or n < k_period:
        return _EMPTY.copy(), _EMPTY.copy()
    h, lo, c = h[-n:], lo[-n:], c[-n:]
    highest = np.lib.stride_tricks.sliding_window_view(h, k_period).max(axis=1)
    lowest = np.lib.stride_tricks.sliding_window_view(lo, k_period).min(axis=1)
    span = highest - lowest
    close_tail = c[k_period - 1:]
    # A flat window has no range; report the midpoint.
    pct_k = np.where(span > 0, (close_tail - lowest) / np.where(span > 0, span, 1.0) * 100.0, 50.0)
    return pct_k, sma(pct_k, d_period)


def true_range(highs: ArrayLike, lows: ArrayLike, closes: ArrayLike) -> np.ndarray:
    """max(high - low, |high - prevClose|, |low - prevClose|), from the second bar on."""
    h, lo, c = _arr(highs), _arr(lows), _arr(closes)
    n = min(len(h), len(lo), len(c))
    if n < 2:
        return _EMPTY.copy()
    h, lo, c = h[-n:], lo[-n:], c[-n:]
    prev_close = c[:-1]
    return np.maximum.reduce([
        h[1:] - lo[1:],
        np.abs(h[1:] - prev_close),
        np.abs(lo[1:] - prev_close),
    ])


def atr(highs: ArrayLike, lows: ArrayLike, closes: ArrayLike, period: int = 14) -> np.ndarray:
    """Average true range as the rolling mean of ``period`` true ranges."""
    return sma(true_range(highs, lows, closes), period)


def volume_sma(volumes: ArrayLike, period: int = 20) -> np.ndarray:
    return sma(volumes, period)


def last(values: np.ndarray, offset: int = 1) -> float | None:
    """``values[-offset]`` or None when the series is too short."""
    if len(values) < offset:
        return None
    return float(values[-offset])
