"""
Bot Scheduler - one periodic asyncio task per running bot.

Each bot gets its own loop and its own lock, so a slow exchange call for
one bot never delays another. Ticks for the same bot are strictly
sequential: the lock also serializes ad-hoc runs (test runs, manual
approvals) against the periodic loop.

Stopping a bot sets its stop event. An in-flight tick is allowed to finish
and persist what it did; the loop then exits instead of re-arming.
"""

from __future__ import annotations

import asyncio
import traceback
from typing import Awaitable, Callable, Dict, List

from tradeforge.core.logger import get_logger

logger = get_logger("scheduler")

# Returns False when the bot should not be re-armed.
TickFn = Callable[[str], Awaitable[bool]]


class BotScheduler:
    def __init__(
        self,
        tick_fn: TickFn,
        interval_seconds: float = 60.0,
        shutdown_timeout: float = 15.0,
    ):
        self._tick_fn = tick_fn
        self.interval_seconds = interval_seconds
        self.shutdown_timeout = shutdown_timeout
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stops: Dict[str, asyncio.Event] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_running(self, bot_id: str) -> bool:
        task = self._tasks.get(bot_id)
        return task is not None and not task.done()

    def running_bots(self) -> List[str]:
        return [bot_id for bot_id in self._tasks if self.is_running(bot_id)]

    def lock_for(self, bot_id: str) -> asyncio.Lock:
        lock = self._locks.get(bot_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bot_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, bot_id: str) -> bool:
        """Arm a bot. Returns False when it is already armed."""
        if self.is_running(bot_id):
            return False
        stop = asyncio.Event()
        self._stops[bot_id] = stop
        self._tasks[bot_id] = asyncio.create_task(self._run(bot_id, stop), name=f"bot-{bot_id}")
        logger.info("Bot armed", bot_id=bot_id, interval=self.interval_seconds)
        return True

    async def stop(self, bot_id: str, wait: bool = True) -> bool:
        """
        Disarm a bot. Returns False for an unknown bot.

        With ``wait`` the call returns once an in-flight tick has finished
        (bounded by the shutdown timeout).
        """
        task = self._tasks.pop(bot_id, None)
        stop = self._stops.pop(bot_id, None)
        if task is None:
            return False
        if stop is not None:
            stop.set()
        if wait and not task.done() and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("In-flight tick did not finish before stop timeout", bot_id=bot_id)
        logger.info("Bot disarmed", bot_id=bot_id)
        return True

    async def shutdown(self) -> None:
        """Stop every loop, letting in-flight ticks finish up to the timeout."""
        tasks = list(self._tasks.values())
        for stop in self._stops.values():
            stop.set()
        self._tasks.clear()
        self._stops.clear()
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Some bot loops did not finish within shutdown timeout",
                pending=[t.get_name() for t in pending],
            )
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self, bot_id: str, stop: asyncio.Event) -> None:
        try:
            while not stop.is_set():
                keep_running = True
                try:
                    async with self.lock_for(bot_id):
                        keep_running = await self._tick_fn(bot_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        "Unhandled tick error",
                        bot_id=bot_id,
                        error=repr(e),
                        error_type=type(e).__name__,
                        traceback=traceback.format_exc(),
                    )
                if not keep_running:
                    logger.info("Bot loop ended", bot_id=bot_id)
                    break
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            if self._tasks.get(bot_id) is asyncio.current_task():
                self._tasks.pop(bot_id, None)
                self._stops.pop(bot_id, None)
