"""Tests for the deterministic backtest replays."""

from __future__ import annotations

import pytest

from tradeforge.exchange.exceptions import InvalidStrategyParamsError
from tradeforge.execution.backtester import (
    BacktestParams,
    RSIBacktestParams,
    run_moving_average_backtest,
    run_rsi_backtest,
)
from tests.conftest import make_candles, trend_candles

# SMA(3) crosses above SMA(5) at bar 10 (close 100) and back below at bar 14 (close 90).
CROSSOVER_CLOSES = [100, 99, 98, 97, 96, 95, 94, 93, 92, 91, 100, 102, 104, 96, 90]


# ---------------------------------------------------------------------------
# Moving average
# ---------------------------------------------------------------------------


def test_crossover_buys_at_bar_ten_and_sells_on_reversal():
    candles = make_candles(CROSSOVER_CLOSES)
    params = BacktestParams(symbol="BTCUSDT", short_period=3, long_period=5,
                            quantity=1, initial_balance=10000)

    result = run_moving_average_backtest(candles, params)

    assert [t.side for t in result.trades] == ["buy", "sell"]
    buy, sell = result.trades
    assert buy.time == candles[10].time
    assert buy.price == 100.0
    assert buy.balance == 9900.0
    assert sell.time == candles[14].time
    assert sell.price == 90.0
    assert sell.balance == 9990.0
    assert result.final_balance == 9990.0
    assert result.pnl == -10.0
    assert result.win_rate == 0.0


def test_open_position_is_force_closed_at_last_close():
    candles = make_candles(CROSSOVER_CLOSES[:13])
    result = run_moving_average_backtest(candles, BacktestParams(short_period=3, long_period=5))

    assert [t.side for t in result.trades] == ["buy", "sell"]
    assert result.trades[-1].price == 104.0
    assert result.final_balance == 10004.0
    assert result.win_rate == 1.0


def test_backtest_is_idempotent():
    candles = trend_candles(down=30, up=30)
    params = BacktestParams(symbol="ETHUSDT", short_period=4, long_period=9)

    first = run_moving_average_backtest(candles, params).to_dict()
    second = run_moving_average_backtest(candles, params).to_dict()

    assert first == second


def test_future_bars_do_not_change_past_trades():
    candles = make_candles(CROSSOVER_CLOSES + [120, 130, 80, 70])
    params = BacktestParams(short_period=3, long_period=5)

    prefix = run_moving_average_backtest(candles[:13], params).trades
    full = run_moving_average_backtest(candles, params).trades

    # Everything before the prefix's forced close is identical
    assert full[:len(prefix) - 1] == prefix[:-1]


def test_not_enough_history_produces_no_trades():
    result = run_moving_average_backtest(make_candles([100, 101, 102]), BacktestParams())

    assert result.trades == []
    assert result.final_balance == 10000.0
    assert result.win_rate == 0.0


def test_report_uses_wire_keys():
    report = run_moving_average_backtest(make_candles(CROSSOVER_CLOSES),
                                         BacktestParams(short_period=3, long_period=5)).to_dict()

    assert set(report) == {"trades", "pnl", "winRate", "finalBalance"}
    assert report["trades"][0] == {
        "time": make_candles(CROSSOVER_CLOSES)[10].time,
        "price": 100.0,
        "side": "buy",
        "quantity": 1.0,
        "balance": 9900.0,
    }


def test_invalid_moving_average_params():
    with pytest.raises(InvalidStrategyParamsError):
        run_moving_average_backtest([], BacktestParams(short_period=0))


# ---------------------------------------------------------------------------
# RSI
# ---------------------------------------------------------------------------


def test_rsi_buys_oversold_and_sells_overbought():
    closes = [100, 95, 90, 85, 80, 85, 90, 95, 100, 105]
    params = RSIBacktestParams(period=3, oversold=30, overbought=70)

    result = run_rsi_backtest(make_candles(closes), params)

    assert [(t.side, t.price) for t in result.trades] == [("buy", 85.0), ("sell", 95.0)]
    assert result.final_balance == 10010.0
    assert result.win_rate == 1.0


def test_rsi_never_sells_without_a_position():
    closes = [100, 105, 110, 115, 120, 125]
    result = run_rsi_backtest(make_candles(closes), RSIBacktestParams(period=3))

    assert result.trades == []


def test_invalid_rsi_bounds():
    with pytest.raises(InvalidStrategyParamsError):
        run_rsi_backtest([], RSIBacktestParams(oversold=80, overbought=20))
