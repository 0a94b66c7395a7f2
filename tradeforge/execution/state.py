"""
Execution State - per-bot runtime state that outlives a single tick.

The store is owned by the scheduler and handed to the controller on every
call; nothing here is module-global. State is created lazily on a bot's
first tick and discarded when the bot stops.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, Optional

from tradeforge.core.models import Bot, VolatilityRegime


def round8(value: float) -> float:
    """Round to 8 decimals (crypto quantity/price precision)."""
    return round(value, 8)


@dataclass
class DrawdownState:
    peak_balance: float = 0.0
    current_drawdown: float = 0.0
    max_drawdown_reached: float = 0.0
    last_peak_time: float = 0.0


@dataclass
class ExecutionState:
    """
    Mutable state for one bot. ``position`` is a signed quantity
    (positive long, negative short); ``entry_price`` is set exactly when
    the position is non-zero.
    """
    last_signal: Optional[str] = None
    position: float = 0.0
    entry_price: Optional[float] = None
    last_trade_price: Optional[float] = None
    paper_balance: float = 0.0
    daily_pnl: float = 0.0
    realized_pnl: float = 0.0
    last_trade_date: Optional[str] = None
    drawdown: DrawdownState = field(default_factory=DrawdownState)
    drawdown_halted: bool = False
    volatility_regime: VolatilityRegime = VolatilityRegime.NORMAL
    last_volatility_check: float = 0.0
    last_funding_time: Optional[int] = None

    @classmethod
    def for_bot(cls, bot: Bot, now: float) -> ExecutionState:
        return cls(
            paper_balance=bot.paper_balance,
            drawdown=DrawdownState(peak_balance=bot.paper_balance, last_peak_time=now),
        )

    @property
    def is_flat(self) -> bool:
        return self.position == 0

    def open(self, signed_quantity: float, price: float) -> None:
        self.position = round8(signed_quantity)
        self.entry_price = price if self.position != 0 else None
        self.last_trade_price = price

    def flatten(self, price: Optional[float] = None) -> None:
        self.position = 0.0
        self.entry_price = None
        if price is not None:
            self.last_trade_price = price

    def add_position(self, signed_quantity: float, price: float) -> None:
        """Open or extend a position; the entry becomes the size-weighted average."""
        existing = abs(self.position)
        added = abs(signed_quantity)
        if existing and self.entry_price:
            entry = round8((self.entry_price * existing + price * added) / (existing + added))
        else:
            entry = price
        self.open(self.position + signed_quantity, entry)
        self.last_trade_price = price

    def close_position(self, price: float) -> float:
        """Flatten at ``price`` and book the realized PnL into the daily and running totals."""
        entry = self.entry_price or price
        pnl = round8((price - entry) * self.position)
        self.daily_pnl = round8(self.daily_pnl + pnl)
        self.realized_pnl = round8(self.realized_pnl + pnl)
        self.flatten(price)
        return pnl

    def check_invariants(self) -> None:
        if (self.position == 0) != (self.entry_price is None):
            raise AssertionError(
                f"position/entry_price out of sync: {self.position} / {self.entry_price}"
            )
        if math.isnan(self.paper_balance):
            raise AssertionError("paper balance is NaN")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["volatility_regime"] = self.volatility_regime.value
        return d


class StateStore:
    """ExecutionState by bot id."""

    def __init__(self):
        self._states: Dict[str, ExecutionState] = {}

    def get_or_create(self, bot: Bot, now: float) -> ExecutionState:
        state = self._states.get(bot.id)
        if state is None:
            state = ExecutionState.for_bot(bot, now)
            self._states[bot.id] = state
        return state

    def get(self, bot_id: str) -> Optional[ExecutionState]:
        return self._states.get(bot_id)

    def discard(self, bot_id: str) -> None:
        self._states.pop(bot_id, None)

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._states

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._states))

    def __len__(self) -> int:
        return len(self._states)
