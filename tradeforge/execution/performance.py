"""
Performance aggregates recomputed from trade history.

Paper bots sum the stored ``pnl`` of their sell rows. Live bots pair each
sell with the buy immediately before it (rows newest first), which assumes
buys and sells strictly alternate; a manual trade or partial fill that
breaks the alternation is misattributed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Sequence, Union

from tradeforge.core.models import Bot, PaperTradeRecord, Performance, TradeRecord

Row = Union[TradeRecord, PaperTradeRecord]


def compute_performance(trades_newest_first: Sequence[Row], paper: bool) -> Performance:
    if not trades_newest_first:
        return Performance()

    total_pnl = 0.0
    wins = 0
    count = 0

    if paper:
        for trade in trades_newest_first:
            pnl = getattr(trade, "pnl", None)
            if trade.side == "sell" and pnl is not None:
                total_pnl += pnl
                count += 1
                if pnl > 0:
                    wins += 1
    else:
        for newer, older in zip(trades_newest_first, trades_newest_first[1:]):
            if newer.side == "sell" and older.side == "buy":
                pnl = (newer.price - older.price) * older.quantity
                total_pnl += pnl
                count += 1
                if pnl > 0:
                    wins += 1

    last_trade_at: datetime = trades_newest_first[0].timestamp
    return Performance(
        pnl=round(total_pnl, 8),
        win_rate=wins / count if count else 0.0,
        trade_count=count,
        last_trade_at=last_trade_at,
    )


def paper_trading_stats(bot: Bot, paper_trades_newest_first: Sequence[PaperTradeRecord]) -> Dict[str, Any]:
    """Ledger summary for the paper-trading dashboard."""
    current_balance = (
        paper_trades_newest_first[0].paper_balance if paper_trades_newest_first else bot.paper_balance
    )
    closing = [t for t in paper_trades_newest_first if t.side == "sell"]
    total_pnl = sum(t.pnl for t in paper_trades_newest_first)
    wins = sum(1 for t in closing if t.pnl > 0)
    initial = bot.paper_balance
    return {
        "currentBalance": current_balance,
        "totalPnL": round(total_pnl, 8),
        "winRate": wins / len(closing) if closing else 0.0,
        "totalTrades": len(paper_trades_newest_first),
        "totalReturn": ((current_balance - initial) / initial * 100) if initial else 0.0,
        "riskLimits": bot.risk_limits.model_dump(),
        "paperTrading": bot.paper_trading,
    }
