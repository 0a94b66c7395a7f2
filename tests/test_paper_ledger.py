"""Tests for the paper ledger and execution state bookkeeping."""

from __future__ import annotations

import pytest

from tradeforge.core.models import VolatilityRegime
from tradeforge.execution.paper import PaperLedger
from tradeforge.execution.state import ExecutionState, StateStore
from tests.conftest import FIXED_NOW, make_bot


def _state(balance: float = 10000.0) -> ExecutionState:
    return ExecutionState(paper_balance=balance)


# ---------------------------------------------------------------------------
# Spot
# ---------------------------------------------------------------------------


def test_spot_buy_locks_full_notional():
    state = _state()
    fill = PaperLedger(state).buy(1.0, 100.0)

    assert fill.balance == 9900.0
    assert fill.closed is False
    assert state.position == 1.0
    assert state.entry_price == 100.0


def test_spot_round_trip_credits_sale_proceeds():
    state = _state()
    ledger = PaperLedger(state)
    ledger.buy(1.0, 100.0)
    fill = ledger.sell(1.0, 110.0)

    assert fill.closed is True
    assert fill.pnl == 10.0
    assert state.paper_balance == 10010.0
    assert state.position == 0
    assert state.entry_price is None
    assert state.realized_pnl == 10.0
    assert state.daily_pnl == 10.0


def test_insufficient_balance_leaves_state_untouched():
    state = _state(50.0)
    assert PaperLedger(state).buy(1.0, 100.0) is None
    assert state.paper_balance == 50.0
    assert state.position == 0


def test_adding_to_a_long_averages_the_entry():
    state = _state()
    ledger = PaperLedger(state)
    ledger.buy(1.0, 100.0)
    ledger.buy(1.0, 110.0)

    assert state.position == 2.0
    assert state.entry_price == 105.0
    assert state.paper_balance == 9790.0


# ---------------------------------------------------------------------------
# Futures
# ---------------------------------------------------------------------------


def test_futures_long_debits_margin_only():
    state = _state()
    fill = PaperLedger(state, leverage=5, futures=True).buy(1.0, 100.0)

    assert fill.balance == 9980.0


def test_futures_short_profit_on_cover():
    state = _state()
    ledger = PaperLedger(state, leverage=5, futures=True)
    ledger.sell(1.0, 100.0)
    fill = ledger.buy(1.0, 90.0)

    assert fill.pnl == 10.0
    assert state.paper_balance == 10010.0
    assert state.position == 0


def test_leverage_is_ignored_for_spot():
    assert PaperLedger(_state(), leverage=10).required_margin(1.0, 100.0) == 100.0


def test_equity_includes_locked_margin_and_unrealized():
    state = _state()
    ledger = PaperLedger(state, leverage=5, futures=True)
    ledger.buy(2.0, 100.0)

    assert ledger.equity() == 10000.0
    assert ledger.equity(mark_price=105.0) == 10010.0


# ---------------------------------------------------------------------------
# ExecutionState / StateStore
# ---------------------------------------------------------------------------


def test_state_for_bot_seeds_balance_and_peak():
    state = ExecutionState.for_bot(make_bot(paper_balance=2500.0), FIXED_NOW)

    assert state.paper_balance == 2500.0
    assert state.drawdown.peak_balance == 2500.0
    assert state.drawdown.last_peak_time == FIXED_NOW
    assert state.volatility_regime == VolatilityRegime.NORMAL


def test_invariant_check_catches_orphan_entry_price():
    state = _state()
    state.entry_price = 100.0
    with pytest.raises(AssertionError):
        state.check_invariants()


def test_state_store_is_per_bot():
    store = StateStore()
    a = store.get_or_create(make_bot(id="a"), FIXED_NOW)
    assert store.get_or_create(make_bot(id="a"), FIXED_NOW) is a
    store.get_or_create(make_bot(id="b"), FIXED_NOW)

    assert sorted(store) == ["a", "b"]
    store.discard("a")
    assert "a" not in store
    assert len(store) == 1
