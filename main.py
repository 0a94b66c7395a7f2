#!/usr/bin/env python3
"""
TradeForge Engine - Main Entry Point

main.py owns the process lifecycle: preflight, logging, config, database,
the trading service (which re-arms running bots) and graceful shutdown on
SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import os
import random
import signal as sig
import sys
import time
import traceback
from pathlib import Path
from typing import Any

_INSTANCE_LOCK_FD: int | None = None


def _acquire_instance_lock() -> bool:
    """
    Single-instance lock so two processes never tick the same bots against
    the same SQLite file.
    """
    try:
        import fcntl
    except ImportError:
        return True

    lock_path = os.getenv("INSTANCE_LOCK_PATH", "data/instance.lock").strip() or "data/instance.lock"
    lock_file = Path(lock_path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        print(f"[FATAL] Another engine instance is already running (lock: {lock_file}).")
        os.close(fd)
        return False

    os.ftruncate(fd, 0)
    os.write(fd, f"{os.getpid()}\n".encode("utf-8"))
    global _INSTANCE_LOCK_FD
    _INSTANCE_LOCK_FD = fd
    return True


def preflight_checks() -> bool:
    """Run pre-flight system checks before startup."""
    for directory in ["data", "logs", "config"]:
        Path(directory).mkdir(parents=True, exist_ok=True)

    if not Path("config/config.yaml").exists():
        print("[WARN] config/config.yaml not found, using defaults")
    if not Path(".env").exists():
        print("[WARN] No .env file found, relying on the process environment")

    return _acquire_instance_lock()


def install_asyncio_exception_handler(loop: asyncio.AbstractEventLoop, logger: Any) -> None:
    """Log asyncio exceptions that would otherwise only reach stderr."""
    def _handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        msg = context.get("message", "asyncio_exception")
        if isinstance(exc, BaseException):
            logger.error(
                "Asyncio exception",
                message=msg,
                error_type=type(exc).__name__,
                error=str(exc),
                traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            )
        else:
            safe_ctx = {k: repr(v) for k, v in context.items() if k not in ("handle", "future", "task")}
            logger.error("Asyncio exception", message=msg, context=safe_ctx)

    loop.set_exception_handler(_handler)


async def run_engine() -> None:
    """Initialize and run the trading service until a shutdown signal."""
    from tradeforge.core.config import get_config
    from tradeforge.core.database import DatabaseManager
    from tradeforge.core.engine import TradingService
    from tradeforge.core.logger import get_logger

    logger = get_logger("main")
    config = get_config()
    shutdown_event = asyncio.Event()

    db = DatabaseManager(config.app.db_path)
    service = None
    cleanup_task = None
    try:
        await db.initialize()
        last_cleanup = await db.get_state("last_log_cleanup")
        if last_cleanup:
            logger.info("Previous log cleanup", **last_cleanup)

        service = TradingService(db, settings=config)
        await service.initialize()

        def _request_shutdown():
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        install_asyncio_exception_handler(loop, logger)
        for s in (sig.SIGINT, sig.SIGTERM):
            try:
                loop.add_signal_handler(s, _request_shutdown)
            except NotImplementedError:
                sig.signal(s, lambda *_: _request_shutdown())

        async def _cleanup_loop() -> None:
            while not shutdown_event.is_set():
                try:
                    await asyncio.sleep(3600)
                    deleted = await db.cleanup_old_logs()
                    await db.set_state("last_log_cleanup", {"at": time.time(), "deleted": deleted})
                    logger.info("Database cleanup completed", deleted_logs=deleted)
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(
                        "Cleanup error",
                        error=repr(e),
                        error_type=type(e).__name__,
                        traceback=traceback.format_exc(),
                    )

        cleanup_task = asyncio.create_task(_cleanup_loop(), name="cleanup_loop")
        logger.info("Trading engine running", armed=len(service.scheduler.running_bots()))

        await shutdown_event.wait()
        logger.info("Shutdown signal received, cleaning up...")
    finally:
        if cleanup_task is not None:
            cleanup_task.cancel()
            await asyncio.gather(cleanup_task, return_exceptions=True)
        if service is not None:
            await service.stop()
        await db.close()


def main():
    """Main entry point."""
    from tradeforge.core.config import ConfigManager
    from tradeforge.core.logger import get_logger, setup_logging

    if not preflight_checks():
        sys.exit(1)

    config = ConfigManager().config
    setup_logging(
        log_level=config.app.log_level,
        log_dir=config.app.log_dir,
        json_output=config.app.json_logs,
    )

    logger = get_logger("main")
    logger.info(
        "Starting TradeForge engine",
        version=config.app.version,
        python=sys.version,
        tick_interval=config.scheduler.tick_interval_seconds,
    )

    # Top-level supervisor: restart on unexpected fatal errors, capped.
    failures = 0
    max_failures = 10
    base_delay = 2.0
    max_delay = 60.0
    while failures < max_failures:
        try:
            asyncio.run(run_engine())
            return
        except KeyboardInterrupt:
            logger.info("Shutdown requested via keyboard interrupt")
            return
        except SystemExit:
            raise
        except Exception as e:
            failures += 1
            delay = min(max_delay, base_delay * (2 ** min(failures - 1, 6)))
            delay = float(delay) + random.random()
            logger.critical(
                "Fatal runtime error; restarting engine",
                error=repr(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
                failures=failures,
                max_failures=max_failures,
                restart_in_seconds=round(delay, 2),
            )
            time.sleep(delay)

    logger.critical("Engine failed too many times; giving up", failures=failures)
    sys.exit(1)


if __name__ == "__main__":
    main()
