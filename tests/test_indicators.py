"""Tests for the numpy indicator library."""

from __future__ import annotations

import numpy as np
import pytest

from tradeforge.utils import indicators as ind


def test_sma_values_and_alignment():
    out = ind.sma([1, 2, 3, 4, 5], 3)
    assert out.tolist() == pytest.approx([2.0, 3.0, 4.0])


def test_sma_insufficient_history_is_empty():
    assert len(ind.sma([1, 2], 3)) == 0
    assert len(ind.sma([1, 2, 3], 0)) == 0


def test_ema_is_seeded_by_sma_then_smoothed():
    prices = [2.0, 4.0, 6.0, 8.0, 10.0, 9.0]
    period = 3
    out = ind.ema(prices, period)
    k = 2 / (period + 1)

    assert len(out) == len(prices) - period + 1
    assert out[0] == pytest.approx(4.0)
    for i in range(1, len(out)):
        assert out[i] == pytest.approx(prices[i + period - 1] * k + out[i - 1] * (1 - k))


def test_rsi_without_losses_is_100():
    out = ind.rsi([1, 2, 3, 4, 5, 6], 3)
    assert len(out) == 3
    assert np.all(out == 100.0)


def test_rsi_without_gains_is_0():
    out = ind.rsi([6, 5, 4, 3, 2], 3)
    assert out.tolist() == pytest.approx([0.0, 0.0])


def test_rsi_wilder_smoothing():
    # deltas: +1, -1, +1, +1
    out = ind.rsi([10, 11, 10, 11, 12], 2)
    # first: gain 0.5, loss 0.5 -> 50
    assert out[0] == pytest.approx(50.0)
    # then gain (0.5 + 1) / 2 = 0.75, loss 0.25 -> 75
    assert out[1] == pytest.approx(75.0)


@pytest.mark.parametrize("seed", [1, 7, 42, 1234])
@pytest.mark.parametrize("period", [2, 5, 14])
def test_rsi_stays_within_bounds_on_random_walks(seed, period):
    rng = np.random.default_rng(seed)
    prices = 100.0 + np.cumsum(rng.normal(0.0, 2.0, size=300))
    out = ind.rsi(prices, period)

    assert len(out) == len(prices) - period
    assert np.all(np.isfinite(out))
    assert np.all((out >= 0.0) & (out <= 100.0))


def test_macd_lengths_follow_slow_and_signal():
    prices = np.linspace(100, 130, 40)
    out = ind.macd(prices, fast=3, slow=6, signal=4)
    assert len(out["macd"]) == 40 - 6 + 1
    assert len(out["signal"]) == len(out["macd"]) - 4 + 1
    assert len(out["histogram"]) == len(out["signal"])
    assert out["histogram"][-1] == pytest.approx(out["macd"][-1] - out["signal"][-1])


def test_macd_insufficient_history():
    out = ind.macd([1, 2, 3], fast=2, slow=5)
    assert all(len(v) == 0 for v in out.values())


def test_bollinger_bands_bracket_the_mean():
    prices = [10, 12, 11, 13, 12, 14, 13]
    bands = ind.bollinger_bands(prices, period=3, std_dev=2.0)
    assert np.all(bands["upper"] >= bands["middle"])
    assert np.all(bands["lower"] <= bands["middle"])
    assert bands["middle"].tolist() == pytest.approx(ind.sma(prices, 3).tolist())


def test_bollinger_flat_series_collapses():
    bands = ind.bollinger_bands([5.0] * 6, period=3)
    assert bands["upper"].tolist() == bands["lower"].tolist() == [5.0] * 4


def test_stochastic_range_and_flat_window():
    highs = [10, 11, 12, 13, 14]
    lows = [8, 9, 10, 11, 12]
    closes = [9, 10, 11, 12, 14]
    k, d = ind.stochastic(highs, lows, closes, k_period=3, d_period=2)
    assert len(k) == 3
    assert len(d) == 2
    assert k[-1] == pytest.approx(100.0)

    flat_k, _ = ind.stochastic([5] * 4, [5] * 4, [5] * 4, k_period=3)
    assert flat_k.tolist() == [50.0, 50.0]


def test_atr_uses_true_range():
    highs = [10, 12, 11]
    lows = [9, 10, 8]
    closes = [9.5, 11, 9]
    tr = ind.true_range(highs, lows, closes)
    # bar 1: max(2, 2.5, 0.5); bar 2: max(3, 0, 3)
    assert tr.tolist() == pytest.approx([2.5, 3.0])
    assert ind.atr(highs, lows, closes, 2).tolist() == pytest.approx([2.75])


def test_last_handles_short_series():
    assert ind.last(np.array([])) is None
    assert ind.last(np.array([1.0, 2.0])) == 2.0
    assert ind.last(np.array([1.0, 2.0]), 2) == 1.0
    assert ind.last(np.array([1.0]), 2) is None
