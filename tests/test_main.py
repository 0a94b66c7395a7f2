"""Tests for the engine entry point lifecycle."""

from __future__ import annotations

import pytest

import main
from tradeforge.core import config as config_module
from tradeforge.core.config import EngineSettings
from tradeforge.core.database import DatabaseManager
from tradeforge.core.engine import TradingService


@pytest.mark.asyncio
async def test_run_engine_closes_database_when_startup_fails(tmp_path, monkeypatch):
    settings = EngineSettings(app={"db_path": str(tmp_path / "engine.db")})
    monkeypatch.setattr(config_module, "get_config", lambda: settings)

    async def failing_initialize(self):
        raise RuntimeError("rearm failed")

    stopped, closed = [], []
    original_stop = TradingService.stop
    original_close = DatabaseManager.close

    async def recording_stop(self):
        stopped.append(True)
        await original_stop(self)

    async def recording_close(self):
        closed.append(self._db is not None)
        await original_close(self)

    monkeypatch.setattr(TradingService, "initialize", failing_initialize)
    monkeypatch.setattr(TradingService, "stop", recording_stop)
    monkeypatch.setattr(DatabaseManager, "close", recording_close)

    with pytest.raises(RuntimeError, match="rearm failed"):
        await main.run_engine()

    assert stopped == [True]
    assert closed == [True]
