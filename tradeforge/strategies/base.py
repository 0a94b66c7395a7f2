"""
Signal Generator Interface - the contract every strategy kind implements.

A generator maps ``candles x state x params`` to ``"buy"``, ``"sell"`` or
``None``. Generators are pure with respect to their inputs: they read the
execution state (for the current position) but never mutate it, and they
never look at the wall clock.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Literal, Optional, Sequence

import numpy as np

from tradeforge.core.models import MarketType, PositionSide
from tradeforge.exchange.base import Candle
from tradeforge.execution.state import ExecutionState

BUY = "buy"
SELL = "sell"

Side = Literal["buy", "sell"]
Signal = Optional[Side]


@dataclass(frozen=True)
class SignalParams:
    """Effective parameters for one evaluation, after regime adjustment."""
    symbol: str
    quantity: float
    interval: str = "1m"
    short_period: int = 0
    long_period: int = 0
    position_side: PositionSide = PositionSide.BOTH
    market_type: MarketType = MarketType.SPOT

    def with_regime(self, short_period: int, long_period: int, quantity: float) -> SignalParams:
        return replace(self, short_period=short_period, long_period=long_period, quantity=quantity)


def closes_of(candles: Sequence[Candle]) -> np.ndarray:
    return np.array([c.close for c in candles], dtype=np.float64)


def volumes_of(candles: Sequence[Candle]) -> np.ndarray:
    return np.array([c.volume for c in candles], dtype=np.float64)


def hlc_of(candles: Sequence[Candle]) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    highs = np.array([c.high for c in candles], dtype=np.float64)
    lows = np.array([c.low for c in candles], dtype=np.float64)
    return highs, lows, closes_of(candles)


def apply_position_side(signal: Signal, position_side: PositionSide, position: float) -> Signal:
    """
    Drop signals that would open a position on a disallowed side.

    ``long``: a sell is kept only while long (it closes); from flat or short
    it would open or extend a short and becomes None. ``short`` mirrors that
    for buys. ``both`` passes everything through.
    """
    if signal == SELL and position_side == PositionSide.LONG and position <= 0:
        return None
    if signal == BUY and position_side == PositionSide.SHORT and position >= 0:
        return None
    return signal


class SignalGenerator(ABC):
    """
    Abstract signal generator. One instance per bot, resolved when the bot
    is configured and reused on every tick.
    """

    kind: str = ""

    @abstractmethod
    def lookback(self, params: SignalParams) -> int:
        """Bars needed before the generator can produce a signal."""

    @abstractmethod
    def generate(
        self, candles: Sequence[Candle], state: ExecutionState, params: SignalParams
    ) -> Signal:
        ...

    def evaluate(
        self, candles: Sequence[Candle], state: ExecutionState, params: SignalParams
    ) -> Signal:
        """Generate and apply the bot's position-side filter."""
        if not candles:
            return None
        signal = self.generate(candles, state, params)
        return apply_position_side(signal, params.position_side, state.position)
