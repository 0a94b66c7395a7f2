"""
Structured Logging - structlog over the stdlib logging tree.

Every engine component logs through ``get_logger(<component>)``. Output goes
to a rotating main log, a rotating error-only log and stdout (colored
console or JSON lines). Credentials and request signatures are masked
before any renderer sees them.
"""

from __future__ import annotations

import logging
import re
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

import structlog


# ---------------------------------------------------------------------------
# Sensitive Data Filter
# ---------------------------------------------------------------------------

_SENSITIVE_KEYS = ("api_key", "api_secret", "apikey", "passphrase", "password", "token", "secret", "signature")

# Signed exchange URLs carry the HMAC in the query string.
_SIGNATURE_QS_RE = re.compile(r"(signature=)([A-Fa-f0-9]{16,})")
_BEARER_RE = re.compile(r"(Bearer\s+)([A-Za-z0-9._\-]{12,})")


def _scrub_string(s: str) -> str:
    s = _SIGNATURE_QS_RE.sub(r"\1<redacted>", s)
    s = _BEARER_RE.sub(r"\1<redacted>", s)
    return s


def _scrub_value(v: Any) -> Any:
    if isinstance(v, str):
        return _scrub_string(v)
    if isinstance(v, dict):
        return {k: _scrub_value(val) for k, val in v.items()}
    if isinstance(v, (list, tuple)):
        t = [_scrub_value(x) for x in v]
        return tuple(t) if isinstance(v, tuple) else t
    return v


def _mask_sensitive(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential-like fields (API keys, secrets, passphrases)."""
    for key in list(event_dict.keys()):
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            value = str(event_dict[key])
            if len(value) > 8:
                event_dict[key] = value[:4] + "****" + value[-4:]
            else:
                event_dict[key] = "****"
        else:
            event_dict[key] = _scrub_value(event_dict[key])
    return event_dict


# ---------------------------------------------------------------------------
# Performance Timer
# ---------------------------------------------------------------------------

class PerformanceTimer:
    """Context manager that logs how long a block took."""

    def __init__(self, logger: Any, operation: str, **kwargs):
        self.logger = logger
        self.operation = operation
        self.kwargs = kwargs
        self.start_time: float = 0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = (time.perf_counter() - self.start_time) * 1000
        if exc_type:
            self.logger.error(
                f"{self.operation} failed",
                duration_ms=round(elapsed, 2),
                error=str(exc_val),
                **self.kwargs
            )
        else:
            level = "warning" if elapsed > 1000 else "debug"
            getattr(self.logger, level)(
                f"{self.operation} completed",
                duration_ms=round(elapsed, 2),
                **self.kwargs
            )
        return False


# ---------------------------------------------------------------------------
# Logger Setup
# ---------------------------------------------------------------------------

def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    json_output: bool = False
) -> None:
    """
    Configure the structured logging system.

    Sets up:
    - Console output with colors (or JSON for production)
    - Rotating main log and error-only log
    - Credential masking on every event
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    main_handler = RotatingFileHandler(
        log_path / "tradeforge.log", encoding="utf-8",
        maxBytes=50 * 1024 * 1024, backupCount=5,
    )
    main_handler.setLevel(level)

    error_handler = RotatingFileHandler(
        log_path / "errors.log", encoding="utf-8",
        maxBytes=10 * 1024 * 1024, backupCount=3,
    )
    error_handler.setLevel(logging.ERROR)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    # Close and remove existing handlers to avoid duplicates and FD leaks
    for h in root_logger.handlers[:]:
        h.close()
        root_logger.removeHandler(h)
    root_logger.addHandler(main_handler)
    root_logger.addHandler(error_handler)
    root_logger.addHandler(console_handler)

    # httpx logs full request URLs at INFO, and signed exchange URLs carry secrets.
    for noisy in ("httpx", "httpcore", "asyncio", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _mask_sensitive,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            pad_event=40,
        )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    for handler in root_logger.handlers:
        handler.setFormatter(formatter)


def get_logger(name: str = "tradeforge") -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return structlog.get_logger(name)


def log_performance(logger: Any, operation: str, **kwargs) -> PerformanceTimer:
    """Create a performance timing context manager."""
    return PerformanceTimer(logger, operation, **kwargs)


def bind_bot_context(bot_id: str, **extra: Any) -> None:
    """Attach bot identity to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(bot_id=bot_id, **extra)


def clear_bot_context() -> None:
    structlog.contextvars.clear_contextvars()
