"""RSI mean reversion: buy at or below oversold, sell at or above overbought."""

from __future__ import annotations

from typing import Sequence

from tradeforge.core.models import RSISpec
from tradeforge.exchange.base import Candle
from tradeforge.execution.state import ExecutionState
from tradeforge.strategies.base import BUY, SELL, Signal, SignalGenerator, SignalParams, closes_of
from tradeforge.utils.indicators import last, rsi


def rsi_signal(value: float | None, oversold: float, overbought: float) -> Signal:
    if value is None:
        return None
    if value <= oversold:
        return BUY
    if value >= overbought:
        return SELL
    return None


class RSIStrategy(SignalGenerator):
    kind = "rsi"

    def __init__(self, period: int = 14, overbought: float = 70.0, oversold: float = 30.0):
        self.period = period
        self.overbought = overbought
        self.oversold = oversold

    @classmethod
    def from_spec(cls, spec: RSISpec) -> RSIStrategy:
        return cls(period=spec.period, overbought=spec.overbought, oversold=spec.oversold)

    def lookback(self, params: SignalParams) -> int:
        return self.period

    def generate(
        self, candles: Sequence[Candle], state: ExecutionState, params: SignalParams
    ) -> Signal:
        current = last(rsi(closes_of(candles), self.period))
        return rsi_signal(current, self.oversold, self.overbought)
