"""
Backtester - deterministic replay of the built-in strategies.

For every bar ``i`` the signal is computed from ``candles[0..i]`` only.
Indicators are causal, so the full-series arrays are computed once and
indexed at ``i``; nothing later than bar ``i`` can influence it. The
simulation is spot, long-only and mirrors the live dedupe rule (a signal
equal to the previous executed one is ignored). An open position is
force-closed at the final close.

There is no clock, randomness or I/O here: identical inputs always give
identical reports.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from tradeforge.exchange.base import Candle
from tradeforge.exchange.exceptions import InvalidStrategyParamsError
from tradeforge.execution.state import round8
from tradeforge.strategies.base import BUY, SELL, closes_of
from tradeforge.strategies.rsi import rsi_signal
from tradeforge.utils.indicators import rsi, sma


@dataclass
class BacktestParams:
    symbol: str = ""
    short_period: int = 5
    long_period: int = 20
    quantity: float = 1.0
    initial_balance: float = 10000.0


@dataclass
class RSIBacktestParams:
    symbol: str = ""
    period: int = 14
    overbought: float = 70.0
    oversold: float = 30.0
    quantity: float = 1.0
    initial_balance: float = 10000.0


@dataclass
class BacktestTrade:
    time: int
    price: float
    side: str
    quantity: float
    balance: float


@dataclass
class BacktestResult:
    trades: List[BacktestTrade] = field(default_factory=list)
    pnl: float = 0.0
    win_rate: float = 0.0
    final_balance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades": [asdict(t) for t in self.trades],
            "pnl": self.pnl,
            "winRate": self.win_rate,
            "finalBalance": self.final_balance,
        }


class _Book:
    """Long-only spot book shared by both replays."""

    def __init__(self, initial_balance: float, quantity: float):
        self.initial_balance = initial_balance
        self.quantity = quantity
        self.balance = initial_balance
        self.position = 0.0
        self.last_signal: Optional[str] = None
        self.trades: List[BacktestTrade] = []

    def buy(self, candle: Candle) -> bool:
        cost = candle.close * self.quantity
        if self.balance < cost:
            return False
        self.balance = round8(self.balance - cost)
        self.position = round8(self.position + self.quantity)
        self._record(candle, BUY, self.quantity)
        return True

    def sell(self, candle: Candle) -> bool:
        if self.position < self.quantity:
            return False
        self.balance = round8(self.balance + candle.close * self.quantity)
        self.position = round8(self.position - self.quantity)
        self._record(candle, SELL, self.quantity)
        return True

    def force_close(self, candle: Candle) -> None:
        if self.position > 0:
            size = self.position
            self.balance = round8(self.balance + candle.close * size)
            self.position = 0.0
            self._record(candle, SELL, size)

    def _record(self, candle: Candle, side: str, quantity: float) -> None:
        self.trades.append(BacktestTrade(
            time=candle.time, price=candle.close, side=side,
            quantity=quantity, balance=self.balance,
        ))
        self.last_signal = side

    def result(self) -> BacktestResult:
        # Round trips are (buy, sell) pairs at positions (0,1), (2,3), ...
        wins = total = 0
        for i in range(1, len(self.trades), 2):
            sell, buy = self.trades[i], self.trades[i - 1]
            if sell.side == SELL and buy.side == BUY:
                total += 1
                if sell.price > buy.price:
                    wins += 1
        return BacktestResult(
            trades=self.trades,
            pnl=round8(self.balance - self.initial_balance),
            win_rate=wins / total if total else 0.0,
            final_balance=self.balance,
        )


def run_moving_average_backtest(candles: Sequence[Candle], params: BacktestParams) -> BacktestResult:
    if params.short_period <= 0 or params.long_period <= 0 or params.quantity <= 0:
        raise InvalidStrategyParamsError("periods and quantity must be positive")

    book = _Book(params.initial_balance, params.quantity)
    if not candles:
        return book.result()

    closes = closes_of(candles)
    short_ma = sma(closes, params.short_period)
    long_ma = sma(closes, params.long_period)
    first = max(params.short_period, params.long_period) - 1

    for i in range(first, len(candles)):
        short_value = short_ma[i - (params.short_period - 1)]
        long_value = long_ma[i - (params.long_period - 1)]
        if short_value > long_value and book.last_signal != BUY:
            book.buy(candles[i])
        elif short_value < long_value and book.last_signal != SELL:
            book.sell(candles[i])

    book.force_close(candles[-1])
    return book.result()


def run_rsi_backtest(candles: Sequence[Candle], params: RSIBacktestParams) -> BacktestResult:
    """
    Replay the live RSI rule: buy at or below oversold while flat, sell at
    or above overbought while long.
    """
    if params.period <= 0 or params.quantity <= 0:
        raise InvalidStrategyParamsError("period and quantity must be positive")
    if params.oversold >= params.overbought:
        raise InvalidStrategyParamsError("oversold must be below overbought")

    book = _Book(params.initial_balance, params.quantity)
    values = rsi(closes_of(candles), params.period)
    if len(values) == 0:
        return book.result()

    # values[0] is the RSI at bar ``period``
    for i in range(params.period, len(candles)):
        signal = rsi_signal(float(values[i - params.period]), params.oversold, params.overbought)
        if signal is None or signal == book.last_signal:
            continue
        if signal == BUY and book.position == 0:
            book.buy(candles[i])
        elif signal == SELL and book.position > 0:
            book.sell(candles[i])

    book.force_close(candles[-1])
    return book.result()
