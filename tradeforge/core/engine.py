"""
Trading Service - the engine's public surface.

Owns the scheduler, the execution state store, the notification dispatcher
and the per-bot caches (resolved signal generator, exchange gateway). The
thin HTTP controllers in front of the engine call only what is defined
here: bot lifecycle, status and history queries, paper-trading stats,
backtests, one-off test runs and manual-signal approval.

Lifecycle:
1. ``initialize()`` re-arms every bot persisted as running
2. The scheduler drives ``_tick_bot`` for every armed bot
3. ``stop()`` drains the scheduler, closes gateways and notifications
"""

from __future__ import annotations

import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tradeforge.core.config import EngineSettings, get_config
from tradeforge.core.error_handler import GracefulErrorHandler
from tradeforge.core.logger import get_logger
from tradeforge.core.models import (
    Bot,
    BotLogEntry,
    BotStatus,
    ConfigDrivenSpec,
    Credential,
    ManualSignalStatus,
    Performance,
    PaperTradeRecord,
)
from tradeforge.core.scheduler import BotScheduler
from tradeforge.exchange.base import ExchangeGateway
from tradeforge.exchange.exceptions import ConfigurationError, InvalidStrategyParamsError
from tradeforge.exchange.factory import create_gateway
from tradeforge.execution.backtester import (
    BacktestParams,
    RSIBacktestParams,
    run_moving_average_backtest,
    run_rsi_backtest,
)
from tradeforge.execution.controller import ERROR, ExecutionController, TickOutcome
from tradeforge.execution.performance import compute_performance, paper_trading_stats
from tradeforge.execution.state import StateStore
from tradeforge.strategies.base import SignalGenerator
from tradeforge.strategies.registry import build_generator
from tradeforge.utils.notifier import NotificationDispatcher, Notifier

logger = get_logger("engine")

CredentialProvider = Callable[[Bot], Awaitable[Optional[Credential]]]
GatewayFactory = Callable[..., ExchangeGateway]


class BotNotFoundError(LookupError):
    """No bot with the given id."""


class ManualSignalError(ValueError):
    """The manual signal is missing or no longer pending."""


async def _no_credentials(bot: Bot) -> Optional[Credential]:
    return None


class TradingService:
    def __init__(
        self,
        db: Any,
        settings: Optional[EngineSettings] = None,
        notifier: Optional[Notifier] = None,
        credential_provider: Optional[CredentialProvider] = None,
        gateway_factory: GatewayFactory = create_gateway,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.settings = settings or get_config()
        self.clock = clock
        self.credential_provider = credential_provider or _no_credentials
        self.gateway_factory = gateway_factory

        self.states = StateStore()
        self.dispatcher = NotificationDispatcher(notifier)
        self.error_handler = GracefulErrorHandler()
        self.controller = ExecutionController(
            db,
            self.states,
            self.dispatcher,
            config=self.settings.engine,
            error_handler=self.error_handler,
            clock=clock,
        )
        self.scheduler = BotScheduler(
            self._tick_bot,
            interval_seconds=self.settings.scheduler.tick_interval_seconds,
            shutdown_timeout=self.settings.scheduler.shutdown_timeout_seconds,
        )
        self._generators: Dict[str, SignalGenerator] = {}
        self._gateways: Dict[str, ExchangeGateway] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self.settings.scheduler.rearm_on_startup:
            await self.rearm_running_bots()

    async def rearm_running_bots(self) -> int:
        """Re-arm every bot persisted with status running. Returns how many were armed."""
        armed = 0
        for bot in await self.db.list_bots(status=BotStatus.RUNNING):
            try:
                await self._prepare(bot)
            except ConfigurationError as e:
                logger.error("Cannot re-arm bot", bot_id=bot.id, error=str(e))
                await self.db.update_bot_status(bot.id, BotStatus.ERROR)
                await self._log(bot.id, "error", f"Failed to re-arm bot: {e}")
                continue
            if self.scheduler.start(bot.id):
                armed += 1
        logger.info("Running bots re-armed", count=armed)
        return armed

    async def stop(self) -> None:
        logger.info("Stopping trading service...")
        await self.scheduler.shutdown()
        for bot_id in list(self._gateways):
            await self._release(bot_id)
        await self.dispatcher.drain()
        logger.info("Trading service stopped")

    # ------------------------------------------------------------------
    # Bot CRUD
    # ------------------------------------------------------------------

    async def create_bot(self, bot: Bot) -> Bot:
        self._check_exchange(bot.exchange)
        bot.strategy.require_complete()
        bot.status = BotStatus.STOPPED
        await self.db.upsert_bot(bot)
        logger.info("Bot created", bot_id=bot.id, exchange=bot.exchange, kind=bot.strategy.kind)
        return bot

    async def update_bot(self, bot: Bot) -> Bot:
        """Replace a bot's configuration; a running bot picks it up on its next tick."""
        existing = await self._require_bot(bot.id)
        self._check_exchange(bot.exchange)
        bot.strategy.require_complete()
        bot.status = existing.status
        await self.db.upsert_bot(bot)
        self._generators.pop(bot.id, None)
        gateway = self._gateways.pop(bot.id, None)
        if gateway is not None:
            await gateway.close()
        return bot

    async def delete_bot(self, bot_id: str) -> bool:
        await self.stop_bot(bot_id)
        deleted = await self.db.delete_bot(bot_id)
        if deleted:
            logger.info("Bot deleted", bot_id=bot_id)
        return deleted

    async def list_bots(self, status: Optional[BotStatus] = None, user_id: Optional[str] = None) -> List[Bot]:
        return await self.db.list_bots(status=status, user_id=user_id)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start_bot(self, bot_id: str) -> Bot:
        """
        Arm a bot. Configuration errors are raised here, before any network
        call. Starting a bot that is already armed is a no-op.
        """
        bot = await self._require_bot(bot_id)
        if self.scheduler.is_running(bot_id):
            return bot

        await self._prepare(bot)
        # Drop state left by test runs while the bot was stopped.
        self.states.discard(bot_id)
        updated = await self.db.update_bot_status(bot_id, BotStatus.RUNNING)
        bot = updated or bot
        bot.status = BotStatus.RUNNING
        await self._log(bot_id, "info", "Bot started successfully")
        self.scheduler.start(bot_id)
        return bot

    async def stop_bot(self, bot_id: str) -> Optional[Bot]:
        """Disarm a bot and drop its in-memory state. Unknown bots are a no-op."""
        was_armed = await self.scheduler.stop(bot_id)
        await self._release(bot_id)
        self.states.discard(bot_id)

        bot = await self.db.get_bot(bot_id)
        if bot is None:
            return None
        if bot.status == BotStatus.RUNNING or was_armed:
            bot = await self.db.update_bot_status(bot_id, BotStatus.STOPPED) or bot
            await self._log(bot_id, "info", "Bot stopped successfully")
        return bot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_bot_status(self, bot_id: str) -> Dict[str, Any]:
        bot = await self._require_bot(bot_id)
        state = self.states.get(bot_id)
        return {
            "id": bot.id,
            "name": bot.name,
            "status": bot.status.value,
            "armed": self.scheduler.is_running(bot_id),
            "mode": bot.mode.value,
            "paper_trading": bot.paper_trading,
            "performance": bot.performance.model_dump(mode="json"),
            "state": state.to_dict() if state else None,
        }

    async def get_bot_performance(self, bot_id: str) -> Performance:
        """Recompute performance from the trade history window and store it."""
        bot = await self._require_bot(bot_id)
        since = datetime.fromtimestamp(self.clock(), tz=timezone.utc) - timedelta(
            days=self.settings.engine.performance_window_days
        )
        trades = await self.db.get_trades(bot_id, paper=bot.paper_trading, since=since)
        performance = compute_performance(trades, paper=bot.paper_trading)
        await self.db.update_bot_performance(bot_id, performance)
        return performance

    async def get_bot_logs(self, bot_id: str, limit: int = 100) -> List[BotLogEntry]:
        await self._require_bot(bot_id)
        return await self.db.get_bot_logs(bot_id, limit=limit)

    async def get_paper_trades(self, bot_id: str, limit: int = 100) -> List[PaperTradeRecord]:
        await self._require_bot(bot_id)
        return await self.db.get_trades(bot_id, paper=True, limit=limit)

    async def get_paper_trading_stats(self, bot_id: str) -> Dict[str, Any]:
        bot = await self._require_bot(bot_id)
        trades = await self.db.get_trades(bot_id, paper=True)
        return paper_trading_stats(bot, trades)

    # ------------------------------------------------------------------
    # Backtests and test runs
    # ------------------------------------------------------------------

    async def run_backtest(
        self,
        symbol: str,
        interval: str = "1h",
        limit: Optional[int] = None,
        strategy: str = "moving_average",
        params: Optional[Dict[str, Any]] = None,
        exchange: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fetch public klines and replay a built-in strategy over them."""
        exchange = exchange or self.settings.backtest.default_exchange
        self._check_exchange(exchange)
        try:
            if strategy == "moving_average":
                bt_params: Any = BacktestParams(symbol=symbol, **(params or {}))
            elif strategy == "rsi":
                bt_params = RSIBacktestParams(symbol=symbol, **(params or {}))
            else:
                raise InvalidStrategyParamsError(f"Unsupported backtest strategy: {strategy}")
        except TypeError as e:
            raise InvalidStrategyParamsError(f"Invalid backtest parameters: {e}") from e

        gateway = self.gateway_factory(exchange, None, settings=self.settings.exchange)
        async with gateway:
            candles = await gateway.fetch_klines(
                symbol, interval, limit or self.settings.backtest.default_limit
            )

        if strategy == "rsi":
            result = run_rsi_backtest(candles, bt_params)
        else:
            result = run_moving_average_backtest(candles, bt_params)
        logger.info(
            "Backtest completed",
            exchange=exchange,
            symbol=symbol,
            strategy=strategy,
            candles=len(candles),
            trades=len(result.trades),
            pnl=result.pnl,
        )
        return result.to_dict()

    async def test_strategy(self, bot_id: str, credential: Optional[Credential] = None) -> Dict[str, Any]:
        """
        Run exactly one tick for a bot with its live credentials, outside
        the scheduler. The tick has its normal effects (orders, records).
        """
        bot = await self._require_bot(bot_id)
        generator, gateway = await self._prepare(bot, credential=credential, cache=False)
        try:
            async with self.scheduler.lock_for(bot_id):
                outcome = await self.controller.run_tick(bot, gateway, generator)
        finally:
            await gateway.close()
        if outcome.action == ERROR:
            self.states.discard(bot_id)
        return outcome.to_dict()

    # ------------------------------------------------------------------
    # Manual signals
    # ------------------------------------------------------------------

    async def approve_manual_signal(self, signal_id: int) -> Dict[str, Any]:
        signal = await self.db.get_manual_signal(signal_id)
        if signal is None:
            raise ManualSignalError(f"Manual signal not found: {signal_id}")
        if not await self.db.transition_manual_signal(signal_id, ManualSignalStatus.APPROVED):
            raise ManualSignalError(f"Manual signal {signal_id} is not pending")

        try:
            bot = await self._require_bot(signal.bot_id)
            _, gateway = await self._prepare(bot)
            async with self.scheduler.lock_for(bot.id):
                fills = await self.controller.execute_signal(
                    bot, gateway, signal.signal, signal.price, signal.quantity
                )
        except Exception as e:
            # Back to pending so the user can retry or reject it.
            await self.db.transition_manual_signal(
                signal_id, ManualSignalStatus.PENDING, from_status=ManualSignalStatus.APPROVED
            )
            logger.error("Manual signal execution failed", signal_id=signal_id,
                         bot_id=signal.bot_id, error=repr(e), error_type=type(e).__name__)
            await self._log(signal.bot_id, "error", f"Manual {signal.signal} signal failed: {e}",
                            {"signal_id": signal_id, "error_type": type(e).__name__})
            if not self.scheduler.is_running(signal.bot_id):
                await self._release(signal.bot_id)
            raise
        await self.db.transition_manual_signal(
            signal_id, ManualSignalStatus.EXECUTED, from_status=ManualSignalStatus.APPROVED
        )
        await self._log(bot.id, "info", f"Manual {signal.signal} signal executed",
                        {"signal_id": signal_id, "fills": len(fills)})
        if not self.scheduler.is_running(bot.id):
            await self._release(bot.id)
        return {"signal_id": signal_id, "status": ManualSignalStatus.EXECUTED.value,
                "fills": [f.to_dict() for f in fills]}

    async def reject_manual_signal(self, signal_id: int) -> Dict[str, Any]:
        signal = await self.db.get_manual_signal(signal_id)
        if signal is None:
            raise ManualSignalError(f"Manual signal not found: {signal_id}")
        if not await self.db.transition_manual_signal(signal_id, ManualSignalStatus.REJECTED):
            raise ManualSignalError(f"Manual signal {signal_id} is not pending")
        await self._log(signal.bot_id, "info", f"Manual {signal.signal} signal rejected",
                        {"signal_id": signal_id})
        return {"signal_id": signal_id, "status": ManualSignalStatus.REJECTED.value}

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _tick_bot(self, bot_id: str) -> bool:
        bot = await self.db.get_bot(bot_id)
        if bot is None or bot.status != BotStatus.RUNNING:
            logger.info("Bot no longer running, disarming", bot_id=bot_id)
            await self._release(bot_id)
            self.states.discard(bot_id)
            return False

        try:
            generator, gateway = await self._prepare(bot)
        except Exception as e:
            logger.error("Bot preparation failed", bot_id=bot_id, error=repr(e),
                         traceback=traceback.format_exc())
            await self.controller.report_failure(bot, e)
            return False

        outcome: TickOutcome = await self.controller.run_tick(bot, gateway, generator)
        if outcome.action == ERROR:
            await self._release(bot_id)
            self.states.discard(bot_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_exchange(self, exchange: str) -> None:
        # Raises UnsupportedExchangeError for unknown names; nothing is opened.
        self.gateway_factory(exchange, None, settings=self.settings.exchange)

    async def _prepare(
        self,
        bot: Bot,
        credential: Optional[Credential] = None,
        cache: bool = True,
    ) -> Tuple[SignalGenerator, ExchangeGateway]:
        """Resolve (and cache) the bot's generator and gateway."""
        generator = self._generators.get(bot.id) if cache else None
        if generator is None:
            strategy_config = None
            if isinstance(bot.strategy, ConfigDrivenSpec) and bot.strategy.strategy_id:
                strategy_config = await self.db.get_strategy(bot.strategy.strategy_id)
            generator = build_generator(
                bot, strategy_config, near_tolerance=self.settings.engine.near_band_tolerance
            )
            if cache:
                self._generators[bot.id] = generator

        gateway = self._gateways.get(bot.id) if cache else None
        if gateway is None:
            if credential is None:
                credential = await self.credential_provider(bot)
            gateway = self.gateway_factory(bot.exchange, credential, settings=self.settings.exchange)
            if not bot.paper_trading and not gateway.enabled:
                raise ConfigurationError(f"Bot {bot.id} has no usable credentials for {bot.exchange}")
            await gateway.initialize()
            if cache:
                self._gateways[bot.id] = gateway
        return generator, gateway

    async def _release(self, bot_id: str) -> None:
        self._generators.pop(bot_id, None)
        gateway = self._gateways.pop(bot_id, None)
        if gateway is not None:
            await gateway.close()

    async def _require_bot(self, bot_id: str) -> Bot:
        bot = await self.db.get_bot(bot_id)
        if bot is None:
            raise BotNotFoundError(f"Bot not found: {bot_id}")
        return bot

    async def _log(self, bot_id: str, level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self.db.insert_bot_log(BotLogEntry(bot_id=bot_id, type=level, message=message, data=data or {}))
