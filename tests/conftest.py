"""Shared test fixtures and stubs for TradeForge tests.

Provides an in-memory database stub, a scripted exchange gateway, a
recording notifier and factory functions for bots and candle series.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import pytest

from tradeforge.core.config import ConfigManager, EngineConfig
from tradeforge.core.models import (
    Bot,
    BotLogEntry,
    BotStatus,
    ManualSignalStatus,
    ManualTradeSignal,
    MovingAverageSpec,
    PaperTradeRecord,
    Performance,
    StrategyConfig,
    TradeRecord,
)
from tradeforge.exchange.base import (
    Candle,
    ExchangeGateway,
    FundingRate,
    FuturesPosition,
    OrderRequest,
    OrderResult,
)
from tradeforge.execution.controller import ExecutionController
from tradeforge.execution.state import StateStore
from tradeforge.utils.notifier import NotificationDispatcher

# 2023-11-14T22:13:20Z
FIXED_NOW = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Stub classes
# ---------------------------------------------------------------------------


class StubDB:
    """Async in-memory stand-in for DatabaseManager.

    Tracking attributes for assertions:
        trades / paper_trades: inserted records in insertion order
        logs: BotLogEntry objects in insertion order
        status_updates: (bot_id, status) tuples
        performance_updates: (bot_id, Performance) tuples
    """

    def __init__(
        self,
        bots: Optional[Sequence[Bot]] = None,
        strategies: Optional[Sequence[StrategyConfig]] = None,
    ) -> None:
        self.bots: Dict[str, Bot] = {b.id: b.model_copy(deep=True) for b in bots or []}
        self.strategies: Dict[str, StrategyConfig] = {s.id: s for s in strategies or []}
        self.trades: List[TradeRecord] = []
        self.paper_trades: List[PaperTradeRecord] = []
        self.logs: List[BotLogEntry] = []
        self.status_updates: List[tuple] = []
        self.performance_updates: List[tuple] = []
        self.manual_signals: Dict[int, ManualTradeSignal] = {}
        self.is_initialized = True

    # Bots

    async def upsert_bot(self, bot: Bot) -> Bot:
        self.bots[bot.id] = bot.model_copy(deep=True)
        return bot

    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        bot = self.bots.get(bot_id)
        return bot.model_copy(deep=True) if bot else None

    async def list_bots(self, status=None, user_id=None) -> List[Bot]:
        return [
            b.model_copy(deep=True) for b in self.bots.values()
            if (status is None or b.status == status) and (user_id is None or b.user_id == user_id)
        ]

    async def update_bot_status(self, bot_id: str, status: BotStatus) -> Optional[Bot]:
        self.status_updates.append((bot_id, status))
        bot = self.bots.get(bot_id)
        if bot is None:
            return None
        bot.status = status
        return bot.model_copy(deep=True)

    async def update_bot_performance(self, bot_id: str, performance: Performance) -> None:
        self.performance_updates.append((bot_id, performance))
        if bot_id in self.bots:
            self.bots[bot_id].performance = performance

    async def delete_bot(self, bot_id: str) -> bool:
        self.logs = [entry for entry in self.logs if entry.bot_id != bot_id]
        return self.bots.pop(bot_id, None) is not None

    async def get_strategy(self, strategy_id: str) -> Optional[StrategyConfig]:
        return self.strategies.get(strategy_id)

    # Trades

    async def insert_trade(self, trade: TradeRecord) -> int:
        self.trades.append(trade)
        return len(self.trades)

    async def insert_paper_trade(self, trade: PaperTradeRecord) -> int:
        self.paper_trades.append(trade)
        return len(self.paper_trades)

    async def get_trades(self, bot_id, paper=False, since=None, limit=None):
        rows = self.paper_trades if paper else self.trades
        out = [t for t in reversed(rows) if t.bot_id == bot_id and (since is None or t.timestamp >= since)]
        return out[:limit] if limit else out

    # Bot logs

    async def insert_bot_log(self, entry: BotLogEntry) -> None:
        self.logs.append(entry)

    async def get_bot_logs(self, bot_id: str, limit: int = 100) -> List[BotLogEntry]:
        return [e for e in reversed(self.logs) if e.bot_id == bot_id][:limit]

    def log_messages(self, level: Optional[str] = None) -> List[str]:
        return [e.message for e in self.logs if level is None or e.type == level]

    # Manual signals

    async def insert_manual_signal(self, signal: ManualTradeSignal) -> int:
        signal_id = len(self.manual_signals) + 1
        signal.id = signal_id
        self.manual_signals[signal_id] = signal
        return signal_id

    async def get_manual_signal(self, signal_id: int) -> Optional[ManualTradeSignal]:
        signal = self.manual_signals.get(signal_id)
        return signal.model_copy() if signal else None

    async def transition_manual_signal(
        self, signal_id, to_status, from_status=ManualSignalStatus.PENDING
    ) -> bool:
        signal = self.manual_signals.get(signal_id)
        if signal is None or signal.status != from_status:
            return False
        signal.status = to_status
        return True


class StubGateway(ExchangeGateway):
    """Scripted exchange gateway.

    Configurable via attributes:
        candles: returned (tail-limited) by fetch_klines()
        position: FuturesPosition returned by get_position()
        funding_rate / next_funding_time: returned by get_funding_rate()
        order_status / fill_price: shape of every OrderResult
        fail_with: exception raised by fetch_klines()
    """

    name = "stub"
    INTERVALS = {"1m": "1m", "1h": "1h"}

    def __init__(
        self,
        candles: Optional[Sequence[Candle]] = None,
        api_key: str = "key",
        api_secret: str = "secret",
        position: Optional[FuturesPosition] = None,
        funding_rate: float = 0.0,
        next_funding_time: int = 0,
        order_status: str = "filled",
        fill_price: float = 0.0,
    ) -> None:
        super().__init__(api_key, api_secret)
        self.candles: List[Candle] = list(candles or [])
        self.position = position
        self.funding_rate = funding_rate
        self.next_funding_time = next_funding_time
        self.order_status = order_status
        self.fill_price = fill_price
        self.fail_with: Optional[Exception] = None
        # Tracking attributes for assertions
        self.kline_requests: List[tuple] = []
        self.orders: List[OrderRequest] = []
        self.futures_orders: List[OrderRequest] = []
        self.leverage_calls: List[tuple] = []
        self.closed_positions: List[str] = []
        self.initialized = 0
        self.closed = 0

    async def initialize(self) -> None:
        self.initialized += 1

    async def close(self) -> None:
        self.closed += 1

    async def fetch_klines(self, symbol, interval, limit=100):
        self.kline_requests.append((symbol, interval, limit))
        if self.fail_with is not None:
            raise self.fail_with
        return self.candles[-limit:]

    def _result(self, request: OrderRequest) -> OrderResult:
        return OrderResult(
            id=f"ord-{len(self.orders) + len(self.futures_orders)}",
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            quantity=request.quantity,
            price=self.fill_price,
            status=self.order_status,
        )

    async def place_order(self, request):
        self.orders.append(request)
        return self._result(request)

    async def place_futures_order(self, request):
        self.futures_orders.append(request)
        return self._result(request)

    async def cancel_order(self, symbol, order_id):
        return True

    async def get_order(self, symbol, order_id):
        return OrderResult(id=order_id, symbol=symbol, side="buy", type="market",
                           quantity=0.0, price=0.0, status="filled")

    async def get_balance(self, asset=None):
        return []

    async def get_account_info(self):
        return {}

    async def get_position(self, symbol):
        return self.position

    async def set_leverage(self, symbol, leverage):
        self.leverage_calls.append((symbol, leverage))
        return True

    async def get_funding_rate(self, symbol):
        return FundingRate(symbol=symbol, funding_rate=self.funding_rate,
                           next_funding_time=self.next_funding_time)

    async def close_position(self, symbol):
        self.closed_positions.append(symbol)
        self.position = None
        return True


class RecordingNotifier:
    """Notifier that keeps every notification it is handed."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, user_id, type, message, bot_name=None, data=None):
        self.sent.append({
            "user_id": user_id,
            "type": type,
            "message": message,
            "bot_name": bot_name,
            "data": data or {},
        })

    def types(self) -> List[str]:
        return [n["type"] for n in self.sent]


class FakeClock:
    def __init__(self, now: float = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_bot(**overrides: Any) -> Bot:
    """Paper spot MA(3/5) bot on BTCUSDT with default risk limits."""
    fields: Dict[str, Any] = {
        "id": "bot-1",
        "user_id": "user-1",
        "name": "Test Bot",
        "exchange": "binance",
        "strategy": MovingAverageSpec(
            symbol="BTCUSDT", short_period=3, long_period=5, quantity=1.0,
        ),
    }
    fields.update(overrides)
    return Bot(**fields)


def make_candles(
    closes: Sequence[float],
    volume: float = 1000.0,
    spread: float = 0.0,
    start_ms: int = 1_699_990_000_000,
    step_ms: int = 60_000,
) -> List[Candle]:
    """One candle per close; high/low sit ``spread`` away from the close."""
    return [
        Candle(
            time=start_ms + i * step_ms,
            open=float(c),
            high=float(c) + spread,
            low=float(c) - spread,
            close=float(c),
            volume=volume,
        )
        for i, c in enumerate(closes)
    ]


def trend_candles(down: int = 10, up: int = 10, start: float = 100.0, step: float = 1.0) -> List[Candle]:
    """A falling leg followed by a rising leg."""
    closes = [start - i * step for i in range(down)]
    bottom = closes[-1]
    closes += [bottom + (i + 1) * step for i in range(up)]
    return make_candles(closes)


# MA(3/5) reads bullish on the last bar: SMA3 = 98, SMA5 = 97, close 100.
BULLISH_CLOSES = [100, 99, 98, 97, 96, 95, 96, 98, 100]
# MA(3/5) reads bearish on the last bar: SMA3 = 92, SMA5 = 93, close 90.
BEARISH_CLOSES = [90, 91, 92, 93, 94, 95, 94, 92, 90]


def make_controller(
    db: Optional[StubDB] = None,
    notifier: Optional[RecordingNotifier] = None,
    clock: Optional[FakeClock] = None,
    config: Optional[EngineConfig] = None,
) -> tuple[ExecutionController, StubDB, RecordingNotifier]:
    """Build an ExecutionController wired to stubs and a fixed clock."""
    _db = db or StubDB()
    _notifier = notifier or RecordingNotifier()
    controller = ExecutionController(
        _db,
        StateStore(),
        NotificationDispatcher(_notifier),
        config=config,
        clock=clock or FakeClock(),
    )
    return controller, _db, _notifier


# ---------------------------------------------------------------------------
# Auto-use fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Prevent ConfigManager singleton state from leaking between tests."""
    saved_instance = ConfigManager._instance
    saved_config = ConfigManager._config
    yield
    ConfigManager._instance = saved_instance
    ConfigManager._config = saved_config
