"""
Notification seam - the single ``notify`` call the engine makes.

Delivery fan-out (email, SMS, chat apps) and preference filtering belong
to the notification service behind this interface. From the engine's
side every call is fire-and-forget: dispatch never blocks a tick and a
failing notifier only produces a log line.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol, Set

from tradeforge.core.logger import get_logger

logger = get_logger("notifier")

# Notification types emitted by the engine.
TRADE = "trade"
ALERT = "alert"
ERROR = "error"
MANUAL_TRADE = "manual_trade"
FUNDING = "funding"


class Notifier(Protocol):
    async def notify(
        self,
        user_id: str,
        type: str,
        message: str,
        bot_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes notifications to the structured log."""

    async def notify(
        self,
        user_id: str,
        type: str,
        message: str,
        bot_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            "Notification",
            user_id=user_id,
            type=type,
            message=message,
            bot_name=bot_name,
            data=data or {},
        )


class NotificationDispatcher:
    """
    Wraps a Notifier so callers can fire notifications without awaiting
    delivery. In-flight deliveries are tracked so shutdown can drain them.
    """

    def __init__(self, notifier: Optional[Notifier] = None, timeout_seconds: float = 10.0):
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.timeout_seconds = timeout_seconds
        self._pending: Set[asyncio.Task] = set()

    def dispatch(
        self,
        user_id: str,
        type: str,
        message: str,
        bot_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._deliver(user_id, type, message, bot_name, data),
            name=f"notify-{type}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(
        self,
        user_id: str,
        type: str,
        message: str,
        bot_name: Optional[str],
        data: Optional[Dict[str, Any]],
    ) -> None:
        try:
            await asyncio.wait_for(
                self.notifier.notify(user_id, type, message, bot_name=bot_name, data=data),
                timeout=self.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                user_id=user_id,
                type=type,
                error=repr(e),
            )

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)."""
        if not self._pending:
            return
        pending = list(self._pending)
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
