"""
Graceful Error Handler - tick-failure classification.

One bot's failure must be invisible to every other bot, so the scheduler
never sees an exception from a tick. Instead the failure is classified,
logged at a level matching its severity, persisted as a bot-log row and
surfaced to the user.

Severity does not change the outcome of a failed tick (the bot is marked
``error`` either way); it tells the operator whether the bot can be
restarted as-is or needs its configuration fixed first.
"""

from __future__ import annotations

import asyncio
import enum
import traceback
from typing import Any, Awaitable, Callable, Optional

from tradeforge.core.logger import get_logger
from tradeforge.exchange.exceptions import (
    AuthenticationError,
    ConfigurationError,
    TransientExchangeError,
)

logger = get_logger("error_handler")

DbLogFn = Callable[..., Awaitable[Any]]
NotifyFn = Callable[[str], Awaitable[Any]]


class ErrorSeverity(enum.Enum):
    """How badly an error affects the bot's ability to keep trading."""

    CRITICAL = "critical"    # Needs user action: bad config, rejected credentials, DB down
    DEGRADED = "degraded"    # Order-level rejection, unexpected failure
    TRANSIENT = "transient"  # Timeout, rate limit, 5xx; next tick is the retry


# Components whose failure blocks every bot.
_CRITICAL_COMPONENTS = frozenset({
    "database",
    "db",
})

# Components whose failure never affects trading.
_NON_BLOCKING_COMPONENTS = frozenset({
    "notifier",
    "notification",
    "performance",
})


class GracefulErrorHandler:
    """
    Centralized error classification and handling.

    Usage::

        handler = GracefulErrorHandler(db_log_fn=db_log)
        severity = await handler.handle(err, component="tick", bot_id=bot.id)
    """

    def __init__(
        self,
        notify_fn: Optional[NotifyFn] = None,
        db_log_fn: Optional[DbLogFn] = None,
    ):
        self._notify_fn = notify_fn
        self._db_log_fn = db_log_fn

    def set_notify_fn(self, fn: NotifyFn) -> None:
        self._notify_fn = fn

    def set_db_log_fn(self, fn: DbLogFn) -> None:
        self._db_log_fn = fn

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify_error(
        self,
        error: BaseException,
        *,
        component: str = "",
    ) -> ErrorSeverity:
        comp = component.lower().strip()

        if comp in _CRITICAL_COMPONENTS:
            return ErrorSeverity.CRITICAL
        if comp in _NON_BLOCKING_COMPONENTS:
            return ErrorSeverity.DEGRADED

        if isinstance(error, (ConfigurationError, AuthenticationError)):
            return ErrorSeverity.CRITICAL

        if isinstance(error, TransientExchangeError):
            return ErrorSeverity.TRANSIENT
        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
            return ErrorSeverity.TRANSIENT

        return ErrorSeverity.DEGRADED

    # ------------------------------------------------------------------
    # Handling
    # ------------------------------------------------------------------

    async def handle(
        self,
        error: BaseException,
        *,
        component: str = "",
        context: str = "",
        bot_id: Optional[str] = None,
    ) -> ErrorSeverity:
        """
        Classify, log, persist and optionally notify about an error.

        Returns the severity so callers can decide what to do. Never raises.
        """
        severity = self.classify_error(error, component=component)
        tb = traceback.format_exception(type(error), error, error.__traceback__)
        tb_str = "".join(tb[-3:])

        msg = (
            f"[{severity.value.upper()}] {component or 'unknown'}"
            f"{(' / ' + context) if context else ''}: "
            f"{type(error).__name__}: {error}"
        )

        log_fields = {
            "bot_id": bot_id,
            "error": str(error),
            "error_type": type(error).__name__,
            "severity": severity.value,
        }
        if severity == ErrorSeverity.CRITICAL:
            logger.critical(msg, traceback=tb_str, **log_fields)
        elif severity == ErrorSeverity.DEGRADED:
            logger.error(msg, traceback=tb_str, **log_fields)
        else:
            logger.warning(msg, **log_fields)

        if self._db_log_fn and bot_id:
            try:
                await self._db_log_fn(
                    bot_id,
                    msg,
                    severity=severity.value,
                    data={"error_type": type(error).__name__, "component": component},
                )
            except Exception as e:
                logger.warning("Failed to persist error log", bot_id=bot_id, error=repr(e))

        if severity == ErrorSeverity.CRITICAL and self._notify_fn:
            try:
                await self._notify_fn(msg)
            except Exception as e:
                logger.warning("Failed to notify operator", error=repr(e))

        return severity
