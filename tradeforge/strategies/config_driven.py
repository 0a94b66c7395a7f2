"""
Config-Driven Strategy - user-authored indicator declarations plus rules.

Each declared indicator is computed over the candle window and bound by
name (current bar) and ``<name>_prev`` (previous bar). Multi-output
indicators bind their parts with suffixes::

    macd        <name>_macd, <name>_signal, <name>_histogram   (<name> = macd line)
    bollinger   <name>_upper, <name>_middle, <name>_lower      (<name> = middle)
    stochastic  <name>_k, <name>_d                             (<name> = %K)

``price``/``close``, ``open``, ``high``, ``low`` and ``volume`` are always
bound. Rules are compiled once at construction and tried in order; the
first rule that fires supplies the action.

Position management (take-profit / stop-loss / auto-reverse) comes from
the definition's ``risk`` block and is applied by the execution
controller via ``exit_triggered`` and ``auto_reverse``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from tradeforge.core.logger import get_logger
from tradeforge.core.models import IndicatorDecl, StrategyDefinition
from tradeforge.exchange.base import Candle
from tradeforge.execution.state import ExecutionState
from tradeforge.strategies.base import Signal, SignalGenerator, SignalParams, closes_of, hlc_of, volumes_of
from tradeforge.strategies.rules import DEFAULT_NEAR_TOLERANCE, CompiledRule, compile_rule, first_firing
from tradeforge.utils import indicators as ind

logger = get_logger("strategy.config")

DEFAULT_TAKE_PROFIT_PCT = 0.5
DEFAULT_STOP_LOSS_PCT = 0.3


@dataclass
class RuleOutcome:
    signal: Signal
    errors: List[str] = field(default_factory=list)


def _bind(bindings: Dict[str, Optional[float]], name: str, series: np.ndarray) -> None:
    bindings[name] = ind.last(series, 1)
    bindings[f"{name}_prev"] = ind.last(series, 2)


class ConfigDrivenStrategy(SignalGenerator):
    kind = "config"

    def __init__(
        self,
        definition: StrategyDefinition,
        near_tolerance: float = DEFAULT_NEAR_TOLERANCE,
        strategy_id: str = "",
    ):
        self.definition = definition
        self.strategy_id = strategy_id
        self.rules: List[CompiledRule] = [
            compile_rule(rule.condition, rule.action, near_tolerance)
            for rule in definition.rules
        ]
        risk = definition.risk
        self.take_profit_pct = risk.take_profit if risk.take_profit else DEFAULT_TAKE_PROFIT_PCT
        self.stop_loss_pct = risk.stop_loss if risk.stop_loss else DEFAULT_STOP_LOSS_PCT
        self.auto_reverse = risk.auto_reverse

        for rule in self.rules:
            if rule.error:
                logger.warning(
                    "Rule will never fire",
                    strategy_id=strategy_id,
                    condition=rule.source,
                    error=rule.error,
                )

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    @staticmethod
    def _decl_lookback(decl: IndicatorDecl) -> int:
        p = decl.params
        if decl.type == "macd":
            return int(p.get("slow", 26)) + int(p.get("signal", 9))
        if decl.type == "stochastic":
            return decl.period + int(p.get("d_period", 3))
        if decl.type in ("rsi", "atr"):
            return decl.period + 2
        return decl.period + 1

    def lookback(self, params: SignalParams) -> int:
        need = max((self._decl_lookback(d) for d in self.definition.indicators), default=2)
        return max(need, params.short_period, params.long_period, 2)

    def bindings(self, candles: Sequence[Candle]) -> Dict[str, Optional[float]]:
        closes = closes_of(candles)
        volumes = volumes_of(candles)
        highs, lows, _ = hlc_of(candles)
        opens = np.array([c.open for c in candles], dtype=np.float64)

        out: Dict[str, Optional[float]] = {}
        for name, series in (
            ("price", closes), ("close", closes), ("open", opens),
            ("high", highs), ("low", lows), ("volume", volumes),
        ):
            _bind(out, name, series)

        for decl in self.definition.indicators:
            p = decl.params
            if decl.type == "sma":
                _bind(out, decl.name, ind.sma(closes, decl.period))
            elif decl.type == "ema":
                _bind(out, decl.name, ind.ema(closes, decl.period))
            elif decl.type == "rsi":
                _bind(out, decl.name, ind.rsi(closes, decl.period))
            elif decl.type == "atr":
                _bind(out, decl.name, ind.atr(highs, lows, closes, decl.period))
            elif decl.type == "volume_sma":
                _bind(out, decl.name, ind.volume_sma(volumes, decl.period))
            elif decl.type == "macd":
                m = ind.macd(closes, int(p.get("fast", 12)), int(p.get("slow", 26)), int(p.get("signal", 9)))
                _bind(out, decl.name, m["macd"])
                for part in ("macd", "signal", "histogram"):
                    _bind(out, f"{decl.name}_{part}", m[part])
            elif decl.type == "bollinger":
                bands = ind.bollinger_bands(closes, decl.period, float(p.get("std_dev", 2.0)))
                _bind(out, decl.name, bands["middle"])
                for part in ("upper", "middle", "lower"):
                    _bind(out, f"{decl.name}_{part}", bands[part])
            elif decl.type == "stochastic":
                k, d = ind.stochastic(highs, lows, closes, decl.period, int(p.get("d_period", 3)))
                _bind(out, decl.name, k)
                _bind(out, f"{decl.name}_k", k)
                _bind(out, f"{decl.name}_d", d)
        return out

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def interpret(self, candles: Sequence[Candle]) -> RuleOutcome:
        if not candles:
            return RuleOutcome(signal=None)
        action, errors = first_firing(self.rules, self.bindings(candles))
        return RuleOutcome(signal=action, errors=errors)

    def generate(
        self, candles: Sequence[Candle], state: ExecutionState, params: SignalParams
    ) -> Signal:
        return self.interpret(candles).signal

    # ------------------------------------------------------------------
    # Position management
    # ------------------------------------------------------------------

    def exit_levels(self, position: float, entry_price: float) -> tuple[float, float]:
        """(take_profit, stop_loss) prices for an open position."""
        tp = self.take_profit_pct / 100
        sl = self.stop_loss_pct / 100
        if position > 0:
            return entry_price * (1 + tp), entry_price * (1 - sl)
        return entry_price * (1 - tp), entry_price * (1 + sl)

    def exit_triggered(self, state: ExecutionState, price: float) -> bool:
        if state.position == 0 or not state.entry_price:
            return False
        take_profit, stop_loss = self.exit_levels(state.position, state.entry_price)
        if state.position > 0:
            return price >= take_profit or price <= stop_loss
        return price <= take_profit or price >= stop_loss
