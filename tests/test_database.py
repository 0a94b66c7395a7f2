"""Persistence contract tests against a real SQLite file."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tradeforge.core.database import DatabaseManager
from tradeforge.core.models import (
    BotLogEntry,
    BotStatus,
    ManualSignalStatus,
    ManualTradeSignal,
    MarketType,
    PaperTradeRecord,
    Performance,
    PositionSide,
    RSISpec,
    RuleDecl,
    StrategyConfig,
    StrategyDefinition,
    TradeRecord,
)
from tests.conftest import make_bot


async def _db(tmp_path) -> DatabaseManager:
    db = DatabaseManager(str(tmp_path / "engine.db"))
    await db.initialize()
    return db


def _trade(side: str, price: float, minutes_ago: int = 0, **kwargs) -> TradeRecord:
    return TradeRecord(
        bot_id="bot-1", user_id="user-1", symbol="BTCUSDT", side=side,
        quantity=1.0, price=price,
        timestamp=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bot_round_trip_keeps_strategy_kind(tmp_path):
    db = await _db(tmp_path)
    try:
        bot = make_bot(strategy=RSISpec(symbol="ETHUSDT", quantity=0.5, period=9))
        await db.upsert_bot(bot)

        loaded = await db.get_bot("bot-1")
        assert isinstance(loaded.strategy, RSISpec)
        assert loaded.strategy.period == 9
        assert loaded.status == BotStatus.STOPPED
        assert await db.get_bot("missing") is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_list_bots_filters_by_status_and_user(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.upsert_bot(make_bot(id="a", status=BotStatus.RUNNING))
        await db.upsert_bot(make_bot(id="b"))
        await db.upsert_bot(make_bot(id="c", user_id="user-2", status=BotStatus.RUNNING))

        running = await db.list_bots(status=BotStatus.RUNNING)
        assert sorted(b.id for b in running) == ["a", "c"]
        mine = await db.list_bots(user_id="user-1")
        assert sorted(b.id for b in mine) == ["a", "b"]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_status_and_performance_updates(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.upsert_bot(make_bot())
        updated = await db.update_bot_status("bot-1", BotStatus.ERROR)
        assert updated.status == BotStatus.ERROR

        await db.update_bot_performance("bot-1", Performance(pnl=12.5, win_rate=0.5, trade_count=2))
        loaded = await db.get_bot("bot-1")
        assert loaded.status == BotStatus.ERROR
        assert loaded.performance.pnl == 12.5
        assert (await db.list_bots(status=BotStatus.ERROR))[0].id == "bot-1"

        assert await db.update_bot_status("missing", BotStatus.RUNNING) is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_update_rejects_fields_outside_whitelist(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.upsert_bot(make_bot())
        with pytest.raises(ValueError, match="not allowed"):
            await db.update_bot("bot-1", {"exchange": "kraken"})
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_delete_bot_removes_its_logs(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.upsert_bot(make_bot())
        await db.insert_bot_log(BotLogEntry(bot_id="bot-1", message="hello"))

        assert await db.delete_bot("bot-1") is True
        assert await db.get_bot_logs("bot-1") == []
        assert await db.delete_bot("bot-1") is False
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_strategy_round_trip(tmp_path):
    db = await _db(tmp_path)
    try:
        config = StrategyConfig(
            id="s-1", user_id="user-1", name="Cross",
            config=StrategyDefinition(rules=[RuleDecl(condition="fast crossesAbove slow", action="buy")]),
        )
        await db.upsert_strategy(config)

        loaded = await db.get_strategy("s-1")
        assert loaded.config.rules[0].condition == "fast crossesAbove slow"
        assert await db.get_strategy("nope") is None
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_trades_are_returned_newest_first(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.insert_trade(_trade("buy", 100.0, minutes_ago=10))
        await db.insert_trade(_trade("sell", 110.0, minutes_ago=5))

        trades = await db.get_trades("bot-1")
        assert [t.side for t in trades] == ["sell", "buy"]

        since = datetime.now(timezone.utc) - timedelta(minutes=7)
        assert [t.side for t in await db.get_trades("bot-1", since=since)] == ["sell"]
        assert len(await db.get_trades("bot-1", limit=1)) == 1
        assert len(await db.get_recent_trades("bot-1", paper=False)) == 2
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_paper_trades_keep_balance_and_pnl(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.insert_paper_trade(PaperTradeRecord(
            bot_id="bot-1", user_id="user-1", symbol="BTCUSDT", side="sell",
            quantity=1.0, price=110.0, paper_balance=10010.0, pnl=10.0,
        ))

        (trade,) = await db.get_trades("bot-1", paper=True)
        assert isinstance(trade, PaperTradeRecord)
        assert trade.paper_balance == 10010.0
        assert trade.pnl == 10.0
        assert trade.trade_type == "paper"
        assert await db.get_trades("bot-1", paper=False) == []
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bot_logs_newest_first_with_data(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.insert_bot_log(BotLogEntry(bot_id="bot-1", message="first"))
        await db.insert_bot_log(BotLogEntry(bot_id="bot-1", type="error", message="second",
                                            data={"error_type": "TimeoutError"}))

        logs = await db.get_bot_logs("bot-1")
        assert [e.message for e in logs] == ["second", "first"]
        assert logs[0].data == {"error_type": "TimeoutError"}
        assert len(await db.get_bot_logs("bot-1", limit=1)) == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_cleanup_drops_only_old_logs(tmp_path):
    db = await _db(tmp_path)
    try:
        old = datetime.now(timezone.utc) - timedelta(days=120)
        await db.insert_bot_log(BotLogEntry(bot_id="bot-1", message="ancient", timestamp=old))
        await db.insert_bot_log(BotLogEntry(bot_id="bot-1", message="fresh"))

        assert await db.cleanup_old_logs(retention_days=90) == 1
        assert [e.message for e in await db.get_bot_logs("bot-1")] == ["fresh"]
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Manual signals
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_manual_signal_transitions_are_compare_and_set(tmp_path):
    db = await _db(tmp_path)
    try:
        signal = ManualTradeSignal(
            bot_id="bot-1", user_id="user-1", signal="buy", symbol="BTCUSDT",
            price=100.0, quantity=1.0, market_type=MarketType.FUTURES,
            leverage=3.0, position_side=PositionSide.LONG,
        )
        signal_id = await db.insert_manual_signal(signal)
        assert signal.id == signal_id

        assert await db.transition_manual_signal(signal_id, ManualSignalStatus.APPROVED) is True
        assert await db.transition_manual_signal(signal_id, ManualSignalStatus.REJECTED) is False
        assert await db.transition_manual_signal(
            signal_id, ManualSignalStatus.EXECUTED, from_status=ManualSignalStatus.APPROVED
        ) is True

        loaded = await db.get_manual_signal(signal_id)
        assert loaded.status == ManualSignalStatus.EXECUTED
        assert loaded.market_type == MarketType.FUTURES
        assert await db.list_manual_signals("bot-1", status=ManualSignalStatus.PENDING) == []
        assert len(await db.list_manual_signals("bot-1")) == 1
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# System state
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_state_round_trip(tmp_path):
    db = await _db(tmp_path)
    try:
        await db.set_state("last_cleanup", {"deleted": 3})
        assert await db.get_state("last_cleanup") == {"deleted": 3}
        assert await db.get_state("missing", default=0) == 0
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_operations_require_initialize(tmp_path):
    db = DatabaseManager(str(tmp_path / "cold.db"))
    with pytest.raises(RuntimeError):
        await db.get_bot("bot-1")
