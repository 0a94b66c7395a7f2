"""
Execution Controller - turns one bot's signal into an action, once per tick.

Every tick runs the same fixed sequence:

  1. Drawdown check (dominates everything below)
  2. Volatility regime refresh and parameter substitution
  3. Futures only: leverage, position reconciliation, funding settlement
  4. Signal generation
  5. Risk gate (stop-loss / take-profit close, daily loss cap, size cap)
  6. Manual mode: queue an approval record and stop
  7. Execution (paper ledger or exchange), trade records, notifications,
     performance refresh

Any exception raised by steps 1-7 is caught in ``run_tick``: it is logged,
written as an error bot-log, surfaced to the user and flips the bot to
``error``. Nothing propagates to the scheduler.

Futures reversals are two steps (close, then open the opposite side)
recorded as two trades, and futures closes go through the exchange's
reduce-only close. Spot never goes short: a sell closes a long or does
nothing.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from tradeforge.core.config import EngineConfig
from tradeforge.core.error_handler import GracefulErrorHandler
from tradeforge.core.logger import bind_bot_context, clear_bot_context, get_logger, log_performance
from tradeforge.core.models import (
    Bot,
    BotLogEntry,
    BotMode,
    BotStatus,
    ManualTradeSignal,
    MarketType,
    PaperTradeRecord,
    PositionSide,
    TradeRecord,
)
from tradeforge.exchange.base import ExchangeGateway, FuturesPosition, OrderRequest, OrderResult
from tradeforge.exchange.exceptions import InvalidOrderError
from tradeforge.execution import risk_manager as risk
from tradeforge.execution.paper import PaperLedger
from tradeforge.execution.performance import compute_performance
from tradeforge.execution.state import ExecutionState, StateStore, round8
from tradeforge.strategies.base import BUY, SELL, Side, Signal, SignalGenerator, SignalParams, apply_position_side
from tradeforge.strategies.config_driven import ConfigDrivenStrategy
from tradeforge.strategies.registry import base_params, kline_limit
from tradeforge.utils import notifier as notify_types
from tradeforge.utils.notifier import NotificationDispatcher

logger = get_logger("controller")

FUNDING_INTERVAL_MS = 8 * 60 * 60 * 1000

# Tick outcomes
HALTED = "halted"
NO_DATA = "no_data"
IDLE = "idle"
REJECTED = "rejected"
MANUAL = "manual"
EXECUTED = "executed"
CLOSED = "closed"
ERROR = "error"

# Execution step kinds
OPEN_STEP = "open"
CLOSE_STEP = "close"


@dataclass(frozen=True)
class Step:
    kind: str
    side: Side
    quantity: float


@dataclass
class ExecutedFill:
    kind: str
    side: str
    quantity: float
    price: float
    pnl: float = 0.0
    status: str = "filled"
    order_id: str = ""
    balance: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TickOutcome:
    bot_id: str
    action: str
    signal: Signal = None
    price: Optional[float] = None
    reason: str = ""
    fills: List[ExecutedFill] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "action": self.action,
            "signal": self.signal,
            "price": self.price,
            "reason": self.reason,
            "fills": [f.to_dict() for f in self.fills],
            "errors": list(self.errors),
        }


def _may_open(side: Side, position_side: PositionSide, market_type: MarketType) -> bool:
    if side == BUY:
        return position_side != PositionSide.SHORT
    # Spot accounts cannot borrow, so a sell never opens a short.
    return market_type != MarketType.SPOT and position_side != PositionSide.LONG


def plan_execution(
    signal: Side,
    position: float,
    quantity: float,
    position_side: PositionSide,
    market_type: MarketType,
    reverse: bool = True,
) -> List[Step]:
    """
    Steps that carry out ``signal`` from the current signed position.

    An opposite position is closed first; the new side is opened only when
    ``reverse`` allows it and the market and position side permit that
    direction. On spot a sell only ever closes a long. A signal in the
    direction already held does nothing.
    """
    holding_opposite = position < 0 if signal == BUY else position > 0
    holding_same = position > 0 if signal == BUY else position < 0

    steps: List[Step] = []
    if holding_same:
        return steps
    if holding_opposite:
        steps.append(Step(CLOSE_STEP, signal, abs(position)))
        if not reverse:
            return steps
    if _may_open(signal, position_side, market_type):
        steps.append(Step(OPEN_STEP, signal, quantity))
    return steps


def close_step(state: ExecutionState) -> Step:
    side = SELL if state.position > 0 else BUY
    return Step(CLOSE_STEP, side, abs(state.position))


class ExecutionController:
    """
    Per-tick executor. Stateless itself: all per-bot state lives in the
    injected StateStore, and every dependency is handed in at construction
    so tests can drive a tick with stubs and a fixed clock.
    """

    def __init__(
        self,
        db: Any,
        states: StateStore,
        dispatcher: NotificationDispatcher,
        config: Optional[EngineConfig] = None,
        error_handler: Optional[GracefulErrorHandler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.states = states
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self.clock = clock
        self.error_handler = error_handler or GracefulErrorHandler()
        self.error_handler.set_db_log_fn(self._write_error_log)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run_tick(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        generator: SignalGenerator,
    ) -> TickOutcome:
        bind_bot_context(bot.id, bot_name=bot.name)
        try:
            with log_performance(logger, "Bot tick", exchange=bot.exchange):
                return await self._tick(bot, gateway, generator)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self.report_failure(bot, e)
            return TickOutcome(bot_id=bot.id, action=ERROR, reason=f"{type(e).__name__}: {e}")
        finally:
            clear_bot_context()

    async def _tick(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        generator: SignalGenerator,
    ) -> TickOutcome:
        now = self.clock()
        state = self.states.get_or_create(bot, now)
        params = base_params(bot)
        risk.reset_daily_if_needed(state, risk.utc_date(now))

        # 1. Drawdown
        if bot.drawdown_config.enabled:
            halt_reason = await self._check_drawdown(bot, state, now)
            if halt_reason:
                return TickOutcome(bot_id=bot.id, action=HALTED, reason=halt_reason)

        # 2. Volatility regime
        if bot.volatility_config.enabled:
            await self._refresh_volatility(bot, gateway, state, params, now)
            params = risk.volatility_adjusted_params(
                params, state.volatility_regime, bot.volatility_config
            )

        # 3. Futures housekeeping
        if bot.is_futures:
            if not bot.paper_trading:
                await gateway.set_leverage(params.symbol, bot.leverage)
                self._reconcile(state, await gateway.get_position(params.symbol))
            await self._settle_funding(bot, gateway, state, params.symbol, now)

        # 4. Signal
        candles = await gateway.fetch_klines(
            params.symbol,
            params.interval,
            kline_limit(generator, params, self.config.kline_padding),
        )
        if not candles:
            logger.warning("No klines returned", symbol=params.symbol, interval=params.interval)
            return TickOutcome(bot_id=bot.id, action=NO_DATA)
        price = candles[-1].close

        errors: List[str] = []
        reverse = True
        if isinstance(generator, ConfigDrivenStrategy):
            if generator.exit_triggered(state, price):
                return await self._close_config_position(bot, gateway, state, generator, price)
            outcome = generator.interpret(candles)
            errors = outcome.errors
            if errors:
                self.dispatcher.dispatch(
                    bot.user_id,
                    notify_types.ERROR,
                    f"Strategy rule error: {'; '.join(errors)}",
                    bot_name=bot.name,
                    data={"errors": errors},
                )
            signal = apply_position_side(outcome.signal, bot.position_side, state.position)
            reverse = generator.auto_reverse or state.last_signal != signal
        else:
            signal = generator.evaluate(candles, state, params)
            if signal is not None and signal == state.last_signal:
                signal = None

        # 5. Risk gate
        decision = risk.check_risk_limits(
            state, bot.risk_limits, signal, price, params.quantity, risk.utc_date(now)
        )
        if decision.action == risk.CLOSE:
            fills = await self._execute_steps(bot, gateway, state, [close_step(state)], price,
                                              reason=decision.trigger or "exit")
            self.dispatcher.dispatch(
                bot.user_id,
                notify_types.ALERT,
                f"{(decision.trigger or 'exit').replace('_', ' ').title()} triggered at {price}",
                bot_name=bot.name,
                data={"price": price, "trigger": decision.trigger},
            )
            await self._refresh_performance(bot)
            return TickOutcome(bot_id=bot.id, action=CLOSED, signal=signal, price=price,
                               reason=decision.reason, fills=fills, errors=errors)
        if decision.action == risk.IDLE:
            return TickOutcome(bot_id=bot.id, action=IDLE, price=price, errors=errors)
        if decision.action == risk.REJECT:
            logger.info("Signal rejected by risk gate", signal=signal, reason=decision.reason)
            await self._bot_log(bot.id, "info", f"Signal rejected: {decision.reason}",
                                {"signal": signal, "price": price})
            return TickOutcome(bot_id=bot.id, action=REJECTED, signal=signal, price=price,
                               reason=decision.reason, errors=errors)

        state.last_signal = signal

        # 6. Manual approval
        if bot.mode == BotMode.MANUAL:
            await self._queue_manual_signal(bot, signal, price, params)
            return TickOutcome(bot_id=bot.id, action=MANUAL, signal=signal, price=price, errors=errors)

        # 7. Execution
        steps = plan_execution(
            signal, state.position, params.quantity, bot.position_side, bot.market_type, reverse
        )
        fills = await self._execute_steps(bot, gateway, state, steps, price, reason="signal")
        if fills:
            await self._refresh_performance(bot)
        state.check_invariants()
        return TickOutcome(
            bot_id=bot.id,
            action=EXECUTED if fills else IDLE,
            signal=signal,
            price=price,
            fills=fills,
            errors=errors,
        )

    # ------------------------------------------------------------------
    # Manual approvals
    # ------------------------------------------------------------------

    async def execute_signal(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        signal: Side,
        price: float,
        quantity: float,
    ) -> List[ExecutedFill]:
        """Run an approved signal through the normal execution path."""
        now = self.clock()
        state = self.states.get_or_create(bot, now)
        risk.reset_daily_if_needed(state, risk.utc_date(now))
        steps = plan_execution(signal, state.position, quantity, bot.position_side, bot.market_type)
        fills = await self._execute_steps(bot, gateway, state, steps, price, reason="manual")
        state.last_signal = signal
        if fills:
            await self._refresh_performance(bot)
        return fills

    async def _queue_manual_signal(
        self, bot: Bot, signal: Side, price: float, params: SignalParams
    ) -> None:
        record = ManualTradeSignal(
            bot_id=bot.id,
            user_id=bot.user_id,
            signal=signal,
            symbol=params.symbol,
            price=price,
            quantity=params.quantity,
            market_type=bot.market_type,
            leverage=bot.leverage,
            position_side=bot.position_side,
        )
        signal_id = await self.db.insert_manual_signal(record)
        logger.info("Manual signal queued", signal=signal, price=price, signal_id=signal_id)
        await self._bot_log(bot.id, "info", f"Manual {signal} signal awaiting approval",
                            {"signal_id": signal_id, "price": price})
        self.dispatcher.dispatch(
            bot.user_id,
            notify_types.MANUAL_TRADE,
            f"{signal.upper()} signal for {params.symbol} at {price} awaiting approval",
            bot_name=bot.name,
            data={
                "signal_id": signal_id,
                "signal": signal,
                "symbol": params.symbol,
                "price": price,
                "quantity": params.quantity,
                "market_type": bot.market_type.value,
                "leverage": bot.leverage,
                "position_side": bot.position_side.value,
            },
        )

    # ------------------------------------------------------------------
    # Tick steps
    # ------------------------------------------------------------------

    async def _check_drawdown(self, bot: Bot, state: ExecutionState, now: float) -> str:
        if bot.paper_trading:
            equity = PaperLedger(state, bot.leverage, bot.is_futures).equity()
        else:
            equity = round8(bot.paper_balance + state.realized_pnl)
        check = risk.update_drawdown_state(state.drawdown, equity, bot.drawdown_config, now)
        if not check.should_stop:
            if state.drawdown_halted:
                logger.info("Drawdown recovered, trading resumed", drawdown=check.current_drawdown)
                state.drawdown_halted = False
            return ""

        if not state.drawdown_halted:
            state.drawdown_halted = True
            logger.info("Trading halted by drawdown protection", reason=check.reason)
            await self._bot_log(bot.id, "warning", check.reason,
                                {"drawdown": check.current_drawdown,
                                 "peak_balance": state.drawdown.peak_balance})
            if not bot.paper_trading:
                self.dispatcher.dispatch(
                    bot.user_id,
                    notify_types.ALERT,
                    f"Trading halted: {check.reason}",
                    bot_name=bot.name,
                    data={"drawdown": check.current_drawdown},
                )
        return check.reason

    async def _refresh_volatility(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        state: ExecutionState,
        params: SignalParams,
        now: float,
    ) -> None:
        due = (
            state.last_volatility_check == 0
            or now - state.last_volatility_check >= self.config.volatility_check_seconds
        )
        if not due:
            return
        cfg = bot.volatility_config
        candles = await gateway.fetch_klines(
            params.symbol, params.interval, cfg.atr_period + self.config.kline_padding
        )
        regime = risk.detect_volatility_regime(candles, cfg)
        if regime != state.volatility_regime:
            logger.info(
                "Volatility regime changed",
                previous=state.volatility_regime.value,
                regime=regime.value,
            )
        state.volatility_regime = regime
        state.last_volatility_check = now

    @staticmethod
    def _reconcile(state: ExecutionState, position: Optional[FuturesPosition]) -> None:
        """Adopt the exchange's view of the position when it disagrees with ours."""
        amount = position.position_amt if position else 0.0
        if round8(amount) == round8(state.position):
            return
        logger.warning("Position out of sync with exchange", local=state.position, exchange=amount)
        if amount == 0:
            state.flatten()
            return
        entry = position.entry_price or state.entry_price or position.mark_price
        state.open(amount, entry)

    async def _settle_funding(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        state: ExecutionState,
        symbol: str,
        now: float,
    ) -> None:
        if state.position == 0:
            state.last_funding_time = None
            return

        now_ms = int(now * 1000)
        rate = await gateway.get_funding_rate(symbol)
        if state.last_funding_time is None:
            state.last_funding_time = (
                rate.next_funding_time if rate.next_funding_time > now_ms
                else now_ms + FUNDING_INTERVAL_MS
            )
            return
        if now_ms < state.last_funding_time:
            return

        payment = round8(state.position * rate.funding_rate)
        state.daily_pnl = round8(state.daily_pnl + payment)
        settled_at = state.last_funding_time
        state.last_funding_time = (
            rate.next_funding_time if rate.next_funding_time > settled_at
            else now_ms + FUNDING_INTERVAL_MS
        )
        logger.info("Funding settled", rate=rate.funding_rate, payment=payment,
                    next_funding_time=state.last_funding_time)
        self.dispatcher.dispatch(
            bot.user_id,
            notify_types.FUNDING,
            f"Funding settled on {symbol}: {payment:+.8f} at rate {rate.funding_rate}",
            bot_name=bot.name,
            data={"symbol": symbol, "rate": rate.funding_rate, "payment": payment,
                  "position": state.position},
        )

    async def _close_config_position(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        state: ExecutionState,
        generator: ConfigDrivenStrategy,
        price: float,
    ) -> TickOutcome:
        entry = state.entry_price
        fills = await self._execute_steps(bot, gateway, state, [close_step(state)], price,
                                          reason="strategy_exit")
        state.last_signal = None
        self.dispatcher.dispatch(
            bot.user_id,
            notify_types.ALERT,
            f"Strategy exit at {price} (entry {entry})",
            bot_name=bot.name,
            data={"price": price, "entry_price": entry,
                  "take_profit_pct": generator.take_profit_pct,
                  "stop_loss_pct": generator.stop_loss_pct},
        )
        await self._refresh_performance(bot)
        return TickOutcome(bot_id=bot.id, action=CLOSED, price=price,
                           reason="strategy take-profit/stop-loss", fills=fills)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_steps(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        state: ExecutionState,
        steps: Sequence[Step],
        price: float,
        reason: str,
    ) -> List[ExecutedFill]:
        fills: List[ExecutedFill] = []
        for step in steps:
            if bot.paper_trading:
                fill = await self._paper_step(bot, state, step, price)
            else:
                fill = await self._live_step(bot, gateway, state, step, price)
            if fill is None:
                break
            fills.append(fill)
            logger.info(
                "Trade executed",
                step=step.kind,
                side=fill.side,
                quantity=fill.quantity,
                price=fill.price,
                pnl=fill.pnl,
                paper=bot.paper_trading,
                reason=reason,
            )
            await self._bot_log(
                bot.id, "info",
                f"{'Paper ' if bot.paper_trading else ''}{fill.side} {fill.quantity} "
                f"{bot.strategy.symbol} @ {fill.price} ({step.kind})",
                {**fill.to_dict(), "reason": reason},
            )
            self.dispatcher.dispatch(
                bot.user_id,
                notify_types.TRADE,
                f"{fill.side.upper()} {fill.quantity} {bot.strategy.symbol} @ {fill.price}",
                bot_name=bot.name,
                data={**fill.to_dict(), "paper": bot.paper_trading, "reason": reason},
            )
            if fill.status in ("cancelled", "rejected"):
                break
        return fills

    async def _paper_step(
        self, bot: Bot, state: ExecutionState, step: Step, price: float
    ) -> Optional[ExecutedFill]:
        ledger = PaperLedger(state, bot.leverage, bot.is_futures)
        paper_fill = ledger.buy(step.quantity, price) if step.side == BUY else ledger.sell(step.quantity, price)
        if paper_fill is None:
            await self._bot_log(bot.id, "warning", "Insufficient paper balance",
                                {"side": step.side, "quantity": step.quantity, "price": price,
                                 "balance": state.paper_balance})
            return None

        order_id = f"paper-{uuid.uuid4().hex[:12]}"
        await self.db.insert_paper_trade(PaperTradeRecord(
            bot_id=bot.id,
            user_id=bot.user_id,
            symbol=bot.strategy.symbol,
            side=paper_fill.side,
            quantity=paper_fill.quantity,
            price=paper_fill.price,
            status="filled",
            exchange=bot.exchange,
            order_id=order_id,
            paper_balance=paper_fill.balance,
            pnl=paper_fill.pnl,
        ))
        return ExecutedFill(
            kind=step.kind,
            side=paper_fill.side,
            quantity=paper_fill.quantity,
            price=paper_fill.price,
            pnl=paper_fill.pnl,
            order_id=order_id,
            balance=paper_fill.balance,
        )

    async def _live_step(
        self,
        bot: Bot,
        gateway: ExchangeGateway,
        state: ExecutionState,
        step: Step,
        price: float,
    ) -> ExecutedFill:
        symbol = bot.strategy.symbol
        if step.kind == CLOSE_STEP and bot.is_futures:
            if not await gateway.close_position(symbol):
                raise InvalidOrderError(f"Failed to close {symbol} position")
            order = OrderResult(id="", symbol=symbol, side=step.side, type="market",
                                quantity=step.quantity, price=price, status="filled")
        else:
            request = OrderRequest(symbol=symbol, side=step.side, type="market", quantity=step.quantity)
            request.validate()
            if bot.is_futures:
                order = await gateway.place_futures_order(request)
            else:
                order = await gateway.place_order(request)

        fill_price = order.price or price
        await self.db.insert_trade(TradeRecord(
            bot_id=bot.id,
            user_id=bot.user_id,
            symbol=symbol,
            side=step.side,
            quantity=step.quantity,
            price=fill_price,
            status=order.status,
            exchange=bot.exchange,
            order_id=order.id,
        ))

        pnl = 0.0
        if order.status in ("cancelled", "rejected"):
            logger.warning("Order not filled", order_id=order.id, status=order.status)
        elif step.kind == CLOSE_STEP:
            pnl = state.close_position(fill_price)
        else:
            state.add_position(step.quantity if step.side == BUY else -step.quantity, fill_price)

        return ExecutedFill(
            kind=step.kind,
            side=step.side,
            quantity=step.quantity,
            price=fill_price,
            pnl=pnl,
            status=order.status,
            order_id=order.id,
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _refresh_performance(self, bot: Bot) -> None:
        since = datetime.fromtimestamp(self.clock(), tz=timezone.utc) - timedelta(
            days=self.config.performance_window_days
        )
        try:
            trades = await self.db.get_trades(bot.id, paper=bot.paper_trading, since=since)
            performance = compute_performance(trades, paper=bot.paper_trading)
            await self.db.update_bot_performance(bot.id, performance)
            bot.performance = performance
        except Exception as e:
            logger.warning("Performance refresh failed", error=repr(e))

    async def _bot_log(self, bot_id: str, level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self.db.insert_bot_log(BotLogEntry(bot_id=bot_id, type=level, message=message, data=data or {}))

    async def _write_error_log(
        self, bot_id: str, message: str, severity: str = "", data: Optional[Dict[str, Any]] = None
    ) -> None:
        await self._bot_log(bot_id, "error", message, {**(data or {}), "severity": severity})

    async def report_failure(self, bot: Bot, error: Exception) -> None:
        await self.error_handler.handle(error, component="tick", context=bot.name, bot_id=bot.id)
        self.dispatcher.dispatch(
            bot.user_id,
            notify_types.ERROR,
            f"Bot stopped after an error: {type(error).__name__}: {error}",
            bot_name=bot.name,
            data={"error_type": type(error).__name__},
        )
        bot.status = BotStatus.ERROR
        try:
            await self.db.update_bot_status(bot.id, BotStatus.ERROR)
        except Exception as e:
            logger.error("Failed to persist error status", error=repr(e))
