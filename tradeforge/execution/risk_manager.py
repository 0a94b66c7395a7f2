"""
Risk Management - drawdown protection, volatility regimes and the
per-tick risk gate.

Policy outcomes here are not errors: a halted or rejected tick is a
deliberate no-op, logged at info level by the controller.

Gate order for one tick:
  1. Daily reset when the UTC calendar date changes
  2. Stop-loss / take-profit against the open position's entry price;
     a hit produces a closing decision that bypasses the caps below
  3. Daily loss cap (dailyPnL <= -maxDailyLoss)
  4. Position size cap (price * quantity > maxPositionSize)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from tradeforge.core.logger import get_logger
from tradeforge.core.models import DrawdownConfig, RiskLimits, VolatilityConfig, VolatilityRegime
from tradeforge.exchange.base import Candle
from tradeforge.execution.state import DrawdownState, ExecutionState
from tradeforge.strategies.base import Signal, SignalParams, hlc_of
from tradeforge.utils.indicators import atr, last

logger = get_logger("risk_manager")


# ---------------------------------------------------------------------------
# Drawdown
# ---------------------------------------------------------------------------

@dataclass
class DrawdownCheck:
    should_stop: bool
    current_drawdown: float
    reason: str = ""


def update_drawdown_state(
    dd: DrawdownState,
    current_balance: float,
    config: DrawdownConfig,
    now: float = 0.0,
) -> DrawdownCheck:
    """
    Track the equity peak and report whether trading must halt.

    drawdown = (peak - current) / peak * 100; the bot halts when it reaches
    ``max_drawdown``, or ``trailing_stop_distance`` when trailing is on.
    """
    if current_balance > dd.peak_balance:
        dd.peak_balance = current_balance
        dd.last_peak_time = now

    if dd.peak_balance <= 0:
        dd.current_drawdown = 0.0
        return DrawdownCheck(should_stop=False, current_drawdown=0.0)

    drawdown = (dd.peak_balance - current_balance) / dd.peak_balance * 100
    dd.current_drawdown = round(drawdown, 8)
    dd.max_drawdown_reached = max(dd.max_drawdown_reached, dd.current_drawdown)

    if dd.current_drawdown >= config.max_drawdown:
        return DrawdownCheck(
            should_stop=True,
            current_drawdown=dd.current_drawdown,
            reason=f"Max drawdown reached: {dd.current_drawdown:.2f}% >= {config.max_drawdown}%",
        )
    if config.trailing_stop and dd.current_drawdown >= config.trailing_stop_distance:
        return DrawdownCheck(
            should_stop=True,
            current_drawdown=dd.current_drawdown,
            reason=(
                f"Trailing stop hit: {dd.current_drawdown:.2f}% from peak "
                f">= {config.trailing_stop_distance}%"
            ),
        )
    return DrawdownCheck(should_stop=False, current_drawdown=dd.current_drawdown)


# ---------------------------------------------------------------------------
# Volatility regime
# ---------------------------------------------------------------------------

def detect_volatility_regime(candles: Sequence[Candle], config: VolatilityConfig) -> VolatilityRegime:
    """Classify ATR as a percentage of the latest close; too little history reads normal."""
    if not candles:
        return VolatilityRegime.NORMAL
    highs, lows, closes = hlc_of(candles)
    current_atr = last(atr(highs, lows, closes, config.atr_period))
    price = float(closes[-1])
    if current_atr is None or price <= 0:
        return VolatilityRegime.NORMAL
    ratio = current_atr / price * 100
    if ratio < config.low_volatility_threshold:
        return VolatilityRegime.LOW
    if ratio > config.high_volatility_threshold:
        return VolatilityRegime.HIGH
    return VolatilityRegime.NORMAL


def volatility_adjusted_params(
    params: SignalParams,
    regime: VolatilityRegime,
    config: VolatilityConfig,
) -> SignalParams:
    regime_params = {
        VolatilityRegime.LOW: config.low_volatility_strategy,
        VolatilityRegime.NORMAL: config.normal_volatility_strategy,
        VolatilityRegime.HIGH: config.high_volatility_strategy,
    }[regime]
    return params.with_regime(
        short_period=regime_params.short_period,
        long_period=regime_params.long_period,
        quantity=regime_params.quantity,
    )


# ---------------------------------------------------------------------------
# Risk gate
# ---------------------------------------------------------------------------

ALLOW = "allow"
CLOSE = "close"
REJECT = "reject"
IDLE = "idle"


@dataclass
class RiskDecision:
    action: str
    reason: str = ""
    trigger: Optional[str] = None  # "stop_loss" | "take_profit" for closes

    @property
    def allowed(self) -> bool:
        return self.action in (ALLOW, CLOSE)


def utc_date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def reset_daily_if_needed(state: ExecutionState, today: str) -> bool:
    if state.last_trade_date != today:
        state.daily_pnl = 0.0
        state.last_trade_date = today
        return True
    return False


def stop_loss_take_profit(state: ExecutionState, price: float, limits: RiskLimits) -> Optional[str]:
    """Return the exit trigger hit by ``price`` for the open position, if any."""
    if state.position == 0 or not state.entry_price:
        return None
    change = (price - state.entry_price) / state.entry_price * 100
    if state.position < 0:
        change = -change
    if limits.stop_loss_pct > 0 and change <= -limits.stop_loss_pct:
        return "stop_loss"
    if limits.take_profit_pct > 0 and change >= limits.take_profit_pct:
        return "take_profit"
    return None


def check_risk_limits(
    state: ExecutionState,
    limits: RiskLimits,
    signal: Signal,
    price: float,
    quantity: float,
    today: str,
) -> RiskDecision:
    reset_daily_if_needed(state, today)

    trigger = stop_loss_take_profit(state, price, limits)
    if trigger:
        return RiskDecision(action=CLOSE, reason=f"{trigger} at {price}", trigger=trigger)

    if signal is None:
        return RiskDecision(action=IDLE)

    if state.daily_pnl <= -limits.max_daily_loss:
        return RiskDecision(
            action=REJECT,
            reason=f"Daily loss limit exceeded ({state.daily_pnl})",
        )

    position_value = price * quantity
    if position_value > limits.max_position_size:
        return RiskDecision(
            action=REJECT,
            reason=f"Position size exceeds limit ({position_value} > {limits.max_position_size})",
        )

    return RiskDecision(action=ALLOW)
