"""
Strategy registry - resolves a bot's strategy spec to a SignalGenerator.

Resolution happens once when a bot is armed; the generator is reused for
every tick. Missing or inconsistent parameters raise
``InvalidStrategyParamsError`` here, before any network call.
"""

from __future__ import annotations

from typing import Optional

from tradeforge.core.models import (
    Bot,
    ConfigDrivenSpec,
    MovingAverageSpec,
    RSISpec,
    StrategyConfig,
)
from tradeforge.exchange.exceptions import InvalidStrategyParamsError
from tradeforge.strategies.base import SignalGenerator, SignalParams
from tradeforge.strategies.config_driven import ConfigDrivenStrategy
from tradeforge.strategies.moving_average import MovingAverageStrategy
from tradeforge.strategies.rsi import RSIStrategy
from tradeforge.strategies.rules import DEFAULT_NEAR_TOLERANCE


def build_generator(
    bot: Bot,
    strategy_config: Optional[StrategyConfig] = None,
    near_tolerance: float = DEFAULT_NEAR_TOLERANCE,
) -> SignalGenerator:
    spec = bot.strategy
    spec.require_complete()

    if isinstance(spec, MovingAverageSpec):
        return MovingAverageStrategy(bot.confirmation_signals)
    if isinstance(spec, RSISpec):
        return RSIStrategy.from_spec(spec)
    if isinstance(spec, ConfigDrivenSpec):
        if strategy_config is None or strategy_config.id != spec.strategy_id:
            raise InvalidStrategyParamsError(f"Strategy not found: {spec.strategy_id}")
        return ConfigDrivenStrategy(
            strategy_config.config,
            near_tolerance=near_tolerance,
            strategy_id=strategy_config.id,
        )
    raise InvalidStrategyParamsError(f"Unknown strategy kind: {getattr(spec, 'kind', spec)!r}")


def base_params(bot: Bot) -> SignalParams:
    """Parameters from the bot's own configuration, before regime adjustment."""
    spec = bot.strategy
    return SignalParams(
        symbol=spec.symbol or "",
        quantity=float(spec.quantity or 0.0),
        interval=spec.interval,
        short_period=int(getattr(spec, "short_period", None) or 0),
        long_period=int(getattr(spec, "long_period", None) or 0),
        position_side=bot.position_side,
        market_type=bot.market_type,
    )


def kline_limit(generator: SignalGenerator, params: SignalParams, padding: int = 10) -> int:
    """Bars to request per tick: the generator's lookback plus padding."""
    return generator.lookback(params) + padding
