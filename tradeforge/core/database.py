"""
Database Manager - SQLite with WAL mode for the trading engine.

Durable storage for bots, config-driven strategies, live and paper trade
history, bot logs, manual-approval signals and a small key-value state
table. Bots and strategies are stored as validated JSON documents next to
the columns the engine filters on; trade history is append-only.

All writes go through one asyncio lock so status transitions for a bot
are strongly ordered.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from tradeforge.core.logger import get_logger
from tradeforge.core.models import (
    Bot,
    BotLogEntry,
    BotStatus,
    ManualSignalStatus,
    ManualTradeSignal,
    PaperTradeRecord,
    Performance,
    StrategyConfig,
    TradeRecord,
)

logger = get_logger("db")


class DatabaseManager:
    """
    Async SQLite database manager.

    Features:
    - WAL mode for concurrent read/write
    - Timed write lock to surface deadlocks instead of hanging a tick
    - Whitelisted column updates
    """

    _LOCK_TIMEOUT: float = 30.0

    def __init__(self, db_path: str = "data/tradeforge.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @asynccontextmanager
    async def _timed_lock(self) -> AsyncIterator[None]:
        """Acquire the DB lock with a timeout to prevent deadlocks."""
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._LOCK_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(
                "Database lock acquisition timed out - possible deadlock",
                timeout=self._LOCK_TIMEOUT,
            )
            raise RuntimeError(f"Database lock timeout after {self._LOCK_TIMEOUT}s")
        try:
            yield
        finally:
            self._lock.release()

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, timeout=15)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.execute("PRAGMA temp_store=MEMORY")

        await self._create_schema()
        self._initialized = True
        logger.info("Database initialized", path=self.db_path)

    async def _create_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS bots (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'stopped'
                CHECK(status IN ('stopped', 'running', 'error')),
            document TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS strategies (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            document TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bot_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL CHECK(side IN ('buy', 'sell')),
            quantity REAL NOT NULL,
            price REAL NOT NULL,
            status TEXT NOT NULL,
            exchange TEXT,
            order_id TEXT,
            timestamp TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS paper_trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bot_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL CHECK(side IN ('buy', 'sell')),
            quantity REAL NOT NULL,
            price REAL NOT NULL,
            status TEXT NOT NULL,
            exchange TEXT,
            order_id TEXT,
            paper_balance REAL NOT NULL,
            trade_type TEXT NOT NULL DEFAULT 'paper',
            pnl REAL NOT NULL DEFAULT 0.0,
            timestamp TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS bot_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bot_id TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('info', 'warning', 'error')),
            message TEXT NOT NULL,
            data TEXT,
            timestamp TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS manual_signals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            bot_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            signal TEXT NOT NULL CHECK(signal IN ('buy', 'sell')),
            symbol TEXT NOT NULL,
            price REAL NOT NULL,
            quantity REAL NOT NULL,
            market_type TEXT NOT NULL,
            leverage REAL NOT NULL,
            position_side TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'approved', 'rejected', 'executed')),
            created_at TEXT NOT NULL,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS system_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT DEFAULT (datetime('now'))
        );

        CREATE INDEX IF NOT EXISTS idx_bots_status ON bots(status);
        CREATE INDEX IF NOT EXISTS idx_trades_bot_ts ON trades(bot_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_paper_trades_bot_ts ON paper_trades(bot_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_bot_logs_bot ON bot_logs(bot_id, id);
        CREATE INDEX IF NOT EXISTS idx_manual_signals_bot ON manual_signals(bot_id, status);
        """
        await self._db.executescript(schema_sql)
        await self._db.commit()

    def _ensure_ready(self) -> None:
        if not self._initialized or self._db is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")

    @staticmethod
    def _ts(value: Optional[datetime] = None) -> str:
        dt = value or datetime.now(timezone.utc)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat()

    async def _fetch_all(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cursor = await self._db.execute(sql, params)
        columns = [description[0] for description in cursor.description]
        rows = await cursor.fetchall()
        return [dict(zip(columns, row)) for row in rows]

    # ------------------------------------------------------------------
    # Bots
    # ------------------------------------------------------------------

    async def upsert_bot(self, bot: Bot) -> None:
        self._ensure_ready()
        bot.updated_at = datetime.now(timezone.utc)
        async with self._timed_lock():
            await self._db.execute(
                """INSERT INTO bots (id, user_id, name, status, document, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    name = excluded.name,
                    status = excluded.status,
                    document = excluded.document,
                    updated_at = excluded.updated_at""",
                (
                    bot.id, bot.user_id, bot.name, bot.status.value,
                    bot.model_dump_json(), self._ts(bot.created_at), self._ts(bot.updated_at),
                ),
            )
            await self._db.commit()

    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        self._ensure_ready()
        cursor = await self._db.execute("SELECT document FROM bots WHERE id = ?", (bot_id,))
        row = await cursor.fetchone()
        return Bot.model_validate_json(row[0]) if row else None

    async def list_bots(
        self, status: Optional[BotStatus] = None, user_id: Optional[str] = None
    ) -> List[Bot]:
        self._ensure_ready()
        sql = "SELECT document FROM bots WHERE 1 = 1"
        params: List[Any] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(BotStatus(status).value)
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at"
        cursor = await self._db.execute(sql, tuple(params))
        rows = await cursor.fetchall()
        bots = []
        for (document,) in rows:
            try:
                bots.append(Bot.model_validate_json(document))
            except ValueError as e:
                logger.error("Stored bot document failed validation", error=repr(e))
        return bots

    BOT_UPDATE_FIELDS = frozenset({"status", "performance", "paper_balance", "name"})

    async def update_bot(self, bot_id: str, updates: Dict[str, Any]) -> Optional[Bot]:
        """Patch whitelisted bot fields; returns the updated bot."""
        self._ensure_ready()
        for key in updates:
            if key not in self.BOT_UPDATE_FIELDS:
                raise ValueError(f"Field '{key}' not allowed in bot updates")
        async with self._timed_lock():
            cursor = await self._db.execute("SELECT document FROM bots WHERE id = ?", (bot_id,))
            row = await cursor.fetchone()
            if not row:
                return None
            data = json.loads(row[0])
            for key, value in updates.items():
                if isinstance(value, Performance):
                    value = value.model_dump(mode="json")
                elif isinstance(value, BotStatus):
                    value = value.value
                data[key] = value
            data["updated_at"] = self._ts()
            bot = Bot.model_validate(data)
            await self._db.execute(
                "UPDATE bots SET name = ?, status = ?, document = ?, updated_at = ? WHERE id = ?",
                (bot.name, bot.status.value, bot.model_dump_json(), self._ts(bot.updated_at), bot_id),
            )
            await self._db.commit()
            return bot

    async def update_bot_status(self, bot_id: str, status: BotStatus) -> Optional[Bot]:
        return await self.update_bot(bot_id, {"status": BotStatus(status)})

    async def update_bot_performance(self, bot_id: str, performance: Performance) -> Optional[Bot]:
        return await self.update_bot(bot_id, {"performance": performance})

    async def delete_bot(self, bot_id: str) -> bool:
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute("DELETE FROM bots WHERE id = ?", (bot_id,))
            await self._db.execute("DELETE FROM bot_logs WHERE bot_id = ?", (bot_id,))
            await self._db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def upsert_strategy(self, strategy: StrategyConfig) -> None:
        self._ensure_ready()
        strategy.updated_at = datetime.now(timezone.utc)
        async with self._timed_lock():
            await self._db.execute(
                """INSERT OR REPLACE INTO strategies (id, user_id, name, document, updated_at)
                VALUES (?, ?, ?, ?, ?)""",
                (
                    strategy.id, strategy.user_id, strategy.name,
                    strategy.model_dump_json(), self._ts(strategy.updated_at),
                ),
            )
            await self._db.commit()

    async def get_strategy(self, strategy_id: str) -> Optional[StrategyConfig]:
        self._ensure_ready()
        cursor = await self._db.execute(
            "SELECT document FROM strategies WHERE id = ?", (strategy_id,)
        )
        row = await cursor.fetchone()
        return StrategyConfig.model_validate_json(row[0]) if row else None

    # ------------------------------------------------------------------
    # Trade history
    # ------------------------------------------------------------------

    async def insert_trade(self, trade: TradeRecord) -> int:
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                """INSERT INTO trades
                (bot_id, user_id, symbol, side, quantity, price, status, exchange, order_id, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    trade.bot_id, trade.user_id, trade.symbol, trade.side,
                    trade.quantity, trade.price, trade.status, trade.exchange,
                    trade.order_id, self._ts(trade.timestamp),
                ),
            )
            await self._db.commit()
            return cursor.lastrowid

    async def insert_paper_trade(self, trade: PaperTradeRecord) -> int:
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                """INSERT INTO paper_trades
                (bot_id, user_id, symbol, side, quantity, price, status, exchange, order_id,
                 paper_balance, trade_type, pnl, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    trade.bot_id, trade.user_id, trade.symbol, trade.side,
                    trade.quantity, trade.price, trade.status, trade.exchange,
                    trade.order_id, trade.paper_balance, trade.trade_type, trade.pnl,
                    self._ts(trade.timestamp),
                ),
            )
            await self._db.commit()
            return cursor.lastrowid

    async def get_trades(
        self,
        bot_id: str,
        paper: bool = False,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[TradeRecord]:
        """Trades for a bot, newest first."""
        self._ensure_ready()
        table = "paper_trades" if paper else "trades"
        sql = f"SELECT * FROM {table} WHERE bot_id = ?"
        params: List[Any] = [bot_id]
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(self._ts(since))
        sql += " ORDER BY timestamp DESC, id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._fetch_all(sql, tuple(params))
        model = PaperTradeRecord if paper else TradeRecord
        return [model.model_validate({k: v for k, v in row.items() if k != "id"}) for row in rows]

    async def get_recent_trades(self, bot_id: str, paper: bool, days: int = 30) -> List[TradeRecord]:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        return await self.get_trades(bot_id, paper=paper, since=since)

    # ------------------------------------------------------------------
    # Bot logs
    # ------------------------------------------------------------------

    async def insert_bot_log(self, entry: BotLogEntry) -> None:
        self._ensure_ready()
        async with self._timed_lock():
            await self._db.execute(
                "INSERT INTO bot_logs (bot_id, type, message, data, timestamp) VALUES (?, ?, ?, ?, ?)",
                (
                    entry.bot_id, entry.type, entry.message,
                    json.dumps(entry.data, default=str), self._ts(entry.timestamp),
                ),
            )
            await self._db.commit()

    async def get_bot_logs(self, bot_id: str, limit: int = 100) -> List[BotLogEntry]:
        """Newest first."""
        self._ensure_ready()
        rows = await self._fetch_all(
            "SELECT bot_id, type, message, data, timestamp FROM bot_logs "
            "WHERE bot_id = ? ORDER BY id DESC LIMIT ?",
            (bot_id, limit),
        )
        entries = []
        for row in rows:
            try:
                row["data"] = json.loads(row["data"]) if row["data"] else {}
            except json.JSONDecodeError:
                row["data"] = {"raw": row["data"]}
            entries.append(BotLogEntry.model_validate(row))
        return entries

    # ------------------------------------------------------------------
    # Manual signals
    # ------------------------------------------------------------------

    async def insert_manual_signal(self, signal: ManualTradeSignal) -> int:
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                """INSERT INTO manual_signals
                (bot_id, user_id, signal, symbol, price, quantity, market_type, leverage,
                 position_side, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    signal.bot_id, signal.user_id, signal.signal, signal.symbol,
                    signal.price, signal.quantity, signal.market_type.value,
                    signal.leverage, signal.position_side.value, signal.status.value,
                    self._ts(signal.created_at),
                ),
            )
            await self._db.commit()
            signal.id = cursor.lastrowid
            return cursor.lastrowid

    async def get_manual_signal(self, signal_id: int) -> Optional[ManualTradeSignal]:
        self._ensure_ready()
        rows = await self._fetch_all(
            "SELECT id, bot_id, user_id, signal, symbol, price, quantity, market_type, leverage, "
            "position_side, status, created_at FROM manual_signals WHERE id = ?",
            (signal_id,),
        )
        return ManualTradeSignal.model_validate(rows[0]) if rows else None

    async def list_manual_signals(
        self, bot_id: str, status: Optional[ManualSignalStatus] = None
    ) -> List[ManualTradeSignal]:
        self._ensure_ready()
        sql = (
            "SELECT id, bot_id, user_id, signal, symbol, price, quantity, market_type, leverage, "
            "position_side, status, created_at FROM manual_signals WHERE bot_id = ?"
        )
        params: List[Any] = [bot_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(ManualSignalStatus(status).value)
        sql += " ORDER BY id DESC"
        rows = await self._fetch_all(sql, tuple(params))
        return [ManualTradeSignal.model_validate(r) for r in rows]

    async def transition_manual_signal(
        self,
        signal_id: int,
        to_status: ManualSignalStatus,
        from_status: ManualSignalStatus = ManualSignalStatus.PENDING,
    ) -> bool:
        """Compare-and-set a signal's status; False when it was not in ``from_status``."""
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                "UPDATE manual_signals SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (
                    ManualSignalStatus(to_status).value, self._ts(), signal_id,
                    ManualSignalStatus(from_status).value,
                ),
            )
            await self._db.commit()
            return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # System State
    # ------------------------------------------------------------------

    async def set_state(self, key: str, value: Any) -> None:
        self._ensure_ready()
        async with self._timed_lock():
            await self._db.execute(
                """INSERT OR REPLACE INTO system_state (key, value, updated_at)
                VALUES (?, ?, datetime('now'))""",
                (key, json.dumps(value)),
            )
            await self._db.commit()

    async def get_state(self, key: str, default: Any = None) -> Any:
        self._ensure_ready()
        cursor = await self._db.execute("SELECT value FROM system_state WHERE key = ?", (key,))
        row = await cursor.fetchone()
        if row:
            try:
                return json.loads(row[0])
            except json.JSONDecodeError:
                return row[0]
        return default

    # ------------------------------------------------------------------
    # Cleanup & Close
    # ------------------------------------------------------------------

    async def cleanup_old_logs(self, retention_days: int = 90) -> int:
        """Remove bot logs older than the retention window."""
        self._ensure_ready()
        cutoff = self._ts(datetime.now(timezone.utc) - timedelta(days=retention_days))
        async with self._timed_lock():
            cursor = await self._db.execute("DELETE FROM bot_logs WHERE timestamp < ?", (cutoff,))
            await self._db.commit()
            return cursor.rowcount

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False
