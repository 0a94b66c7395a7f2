"""Tests for signal generators and the strategy registry."""

from __future__ import annotations

import pytest

from tradeforge.core.models import (
    ConfigDrivenSpec,
    ConfirmationSignals,
    IndicatorDecl,
    MovingAverageSpec,
    PositionSide,
    RSISpec,
    RuleDecl,
    StrategyConfig,
    StrategyDefinition,
)
from tradeforge.exchange.exceptions import InvalidStrategyParamsError
from tradeforge.execution.state import ExecutionState
from tradeforge.strategies.base import SignalParams, apply_position_side
from tradeforge.strategies.config_driven import ConfigDrivenStrategy
from tradeforge.strategies.moving_average import MovingAverageStrategy
from tradeforge.strategies.registry import base_params, build_generator, kline_limit
from tradeforge.strategies.rsi import RSIStrategy, rsi_signal
from tests.conftest import BEARISH_CLOSES, BULLISH_CLOSES, make_bot, make_candles

MA_PARAMS = SignalParams(symbol="BTCUSDT", quantity=1.0, short_period=3, long_period=5)


# ---------------------------------------------------------------------------
# Moving average
# ---------------------------------------------------------------------------


def test_moving_average_buy_and_sell():
    strategy = MovingAverageStrategy()
    state = ExecutionState()
    assert strategy.evaluate(make_candles(BULLISH_CLOSES), state, MA_PARAMS) == "buy"
    assert strategy.evaluate(make_candles(BEARISH_CLOSES), state, MA_PARAMS) == "sell"


def test_moving_average_is_pure():
    strategy = MovingAverageStrategy()
    state = ExecutionState()
    candles = make_candles(BULLISH_CLOSES)

    signals = [strategy.evaluate(candles, state, MA_PARAMS) for _ in range(5)]

    assert signals == ["buy"] * 5
    assert candles == make_candles(BULLISH_CLOSES)
    assert state.last_signal is None


def test_moving_average_needs_long_period_bars():
    strategy = MovingAverageStrategy()
    assert strategy.evaluate(make_candles([1, 2, 3, 4]), ExecutionState(), MA_PARAMS) is None
    assert strategy.evaluate([], ExecutionState(), MA_PARAMS) is None


def test_rsi_confirmation_blocks_overbought_buy():
    # Monotonic rise: RSI is 100
    candles = make_candles([90 + i for i in range(20)])
    blocked = MovingAverageStrategy(ConfirmationSignals(use_rsi=True, rsi_period=5))
    assert blocked.evaluate(candles, ExecutionState(), MA_PARAMS) is None
    assert MovingAverageStrategy().evaluate(candles, ExecutionState(), MA_PARAMS) == "buy"


def test_volume_confirmation_compares_against_threshold():
    candles = make_candles(BULLISH_CLOSES, volume=500.0)
    strict = MovingAverageStrategy(ConfirmationSignals(use_volume=True, volume_threshold=2.0))
    lenient = MovingAverageStrategy(ConfirmationSignals(use_volume=True, volume_threshold=0.5))
    assert strict.evaluate(candles, ExecutionState(), MA_PARAMS) is None
    assert lenient.evaluate(candles, ExecutionState(), MA_PARAMS) == "buy"


def test_trend_strength_confirmation():
    # |98 - 97| / 97 * 100 is about 1.03%
    candles = make_candles(BULLISH_CLOSES)
    weak = MovingAverageStrategy(ConfirmationSignals(use_trend_strength=True, min_trend_strength=2.0))
    ok = MovingAverageStrategy(ConfirmationSignals(use_trend_strength=True, min_trend_strength=1.0))
    assert weak.evaluate(candles, ExecutionState(), MA_PARAMS) is None
    assert ok.evaluate(candles, ExecutionState(), MA_PARAMS) == "buy"


def test_lookback_includes_rsi_confirmation():
    strategy = MovingAverageStrategy(ConfirmationSignals(use_rsi=True, rsi_period=14))
    assert strategy.lookback(MA_PARAMS) == 15
    assert kline_limit(strategy, MA_PARAMS, padding=10) == 25


# ---------------------------------------------------------------------------
# Position side filter
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("signal,side,position,expected", [
    ("sell", PositionSide.LONG, 0.0, None),
    ("sell", PositionSide.LONG, 1.0, "sell"),
    ("buy", PositionSide.SHORT, 0.0, None),
    ("buy", PositionSide.SHORT, -1.0, "buy"),
    ("buy", PositionSide.LONG, 0.0, "buy"),
    ("sell", PositionSide.BOTH, 0.0, "sell"),
    (None, PositionSide.BOTH, 0.0, None),
])
def test_apply_position_side(signal, side, position, expected):
    assert apply_position_side(signal, side, position) == expected


# ---------------------------------------------------------------------------
# RSI
# ---------------------------------------------------------------------------


def test_rsi_signal_thresholds_are_inclusive():
    assert rsi_signal(30.0, 30, 70) == "buy"
    assert rsi_signal(70.0, 30, 70) == "sell"
    assert rsi_signal(50.0, 30, 70) is None
    assert rsi_signal(None, 30, 70) is None


def test_rsi_strategy_on_falling_prices():
    strategy = RSIStrategy(period=3)
    candles = make_candles([100, 95, 90, 85, 80])
    assert strategy.evaluate(candles, ExecutionState(), MA_PARAMS) == "buy"


# ---------------------------------------------------------------------------
# Config-driven
# ---------------------------------------------------------------------------


def _definition(**kwargs) -> StrategyDefinition:
    return StrategyDefinition(**kwargs)


def test_config_bindings_cover_multi_output_indicators():
    definition = _definition(indicators=[
        IndicatorDecl(name="m", type="macd", params={"fast": 3, "slow": 6, "signal": 3}),
        IndicatorDecl(name="bb", type="bollinger", period=5),
        IndicatorDecl(name="st", type="stochastic", period=5, params={"d_period": 3}),
        IndicatorDecl(name="vol", type="volume_sma", period=5),
    ])
    strategy = ConfigDrivenStrategy(definition)
    bindings = strategy.bindings(make_candles([100 + (i % 5) for i in range(30)], spread=1.0))

    for key in ("m", "m_macd", "m_signal", "m_histogram", "bb_upper", "bb_middle",
                "bb_lower", "st_k", "st_d", "vol", "price_prev", "volume"):
        assert bindings[key] is not None, key
    assert bindings["bb"] == bindings["bb_middle"]
    assert bindings["vol"] == 1000.0


def test_config_strategy_reads_not_ready_as_no_signal():
    definition = _definition(
        indicators=[IndicatorDecl(name="slow", type="sma", period=50)],
        rules=[RuleDecl(condition="price > slow", action="buy")],
    )
    outcome = ConfigDrivenStrategy(definition).interpret(make_candles(BULLISH_CLOSES))
    assert outcome.signal is None
    assert outcome.errors == []


def test_config_exit_levels_default_percentages():
    strategy = ConfigDrivenStrategy(_definition())
    take_profit, stop_loss = strategy.exit_levels(1.0, 100.0)
    assert take_profit == pytest.approx(100.5)
    assert stop_loss == pytest.approx(99.7)

    state = ExecutionState(position=-1.0, entry_price=100.0)
    assert strategy.exit_triggered(state, 99.4)
    assert strategy.exit_triggered(state, 100.4)
    assert not strategy.exit_triggered(state, 100.0)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_build_generator_by_kind():
    assert isinstance(build_generator(make_bot()), MovingAverageStrategy)
    rsi_bot = make_bot(strategy=RSISpec(symbol="BTCUSDT", quantity=1.0, period=7))
    generator = build_generator(rsi_bot)
    assert isinstance(generator, RSIStrategy)
    assert generator.period == 7


def test_build_generator_for_config_requires_matching_strategy():
    bot = make_bot(strategy=ConfigDrivenSpec(symbol="BTCUSDT", quantity=1.0, strategy_id="s-1"))
    with pytest.raises(InvalidStrategyParamsError):
        build_generator(bot, None)
    with pytest.raises(InvalidStrategyParamsError):
        build_generator(bot, StrategyConfig(id="other", user_id="user-1", name="x"))

    config = StrategyConfig(id="s-1", user_id="user-1", name="Crossover")
    assert isinstance(build_generator(bot, config), ConfigDrivenStrategy)


def test_build_generator_rejects_missing_params():
    bot = make_bot(strategy=MovingAverageSpec(symbol="BTCUSDT", long_period=5, quantity=1.0))
    with pytest.raises(InvalidStrategyParamsError, match="short_period"):
        build_generator(bot)


def test_base_params_from_bot():
    params = base_params(make_bot(position_side=PositionSide.SHORT))
    assert params.symbol == "BTCUSDT"
    assert params.short_period == 3
    assert params.long_period == 5
    assert params.quantity == 1.0
    assert params.position_side == PositionSide.SHORT
