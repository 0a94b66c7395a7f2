"""
Paper Ledger - simulated fills against a bot's ExecutionState.

Spot positions lock the full notional; futures positions lock margin
``notional / leverage``. Closing a position releases the locked amount
plus realized PnL, so for spot a close credits exactly the sale proceeds.
All balances and quantities are rounded to 8 decimals.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tradeforge.core.logger import get_logger
from tradeforge.execution.state import ExecutionState, round8

logger = get_logger("paper")


@dataclass
class PaperFill:
    side: str
    quantity: float
    price: float
    pnl: float
    balance: float
    closed: bool


class PaperLedger:
    def __init__(self, state: ExecutionState, leverage: float = 1.0, futures: bool = False):
        self.state = state
        self.margin_factor = 1.0 / max(leverage, 1.0) if futures else 1.0

    def required_margin(self, quantity: float, price: float) -> float:
        return round8(price * quantity * self.margin_factor)

    def buy(self, quantity: float, price: float) -> Optional[PaperFill]:
        """Close a short, or open/extend a long. None when the ledger cannot afford it."""
        if self.state.position < 0:
            return self._close(price, side="buy")
        return self._open(quantity, price, side="buy")

    def sell(self, quantity: float, price: float) -> Optional[PaperFill]:
        """Close a long, or open/extend a short. None when the ledger cannot afford it."""
        if self.state.position > 0:
            return self._close(price, side="sell")
        return self._open(quantity, price, side="sell")

    # ------------------------------------------------------------------

    def _open(self, quantity: float, price: float, side: str) -> Optional[PaperFill]:
        st = self.state
        cost = self.required_margin(quantity, price)
        if st.paper_balance < cost:
            logger.info(
                "Insufficient paper balance",
                side=side,
                balance=st.paper_balance,
                required=cost,
            )
            return None

        st.paper_balance = round8(st.paper_balance - cost)
        st.add_position(quantity if side == "buy" else -quantity, price)
        return PaperFill(side=side, quantity=quantity, price=price, pnl=0.0,
                         balance=st.paper_balance, closed=False)

    def _close(self, price: float, side: str) -> PaperFill:
        st = self.state
        size = abs(st.position)
        released = round8((st.entry_price or price) * size * self.margin_factor)
        pnl = st.close_position(price)
        st.paper_balance = round8(st.paper_balance + released + pnl)
        return PaperFill(side=side, quantity=size, price=price, pnl=pnl,
                         balance=st.paper_balance, closed=True)

    def equity(self, mark_price: Optional[float] = None) -> float:
        """Cash plus locked margin plus unrealized PnL at ``mark_price``."""
        st = self.state
        if st.position == 0 or not st.entry_price:
            return st.paper_balance
        size = abs(st.position)
        locked = st.entry_price * size * self.margin_factor
        mark = mark_price if mark_price is not None else st.entry_price
        unrealized = (mark - st.entry_price) * st.position
        return round8(st.paper_balance + locked + unrealized)
