"""
Moving Average Crossover - trend-following baseline.

Signal: ``buy`` while SMA(short) > SMA(long), otherwise ``sell``.

Optional confirmations (each blocks the raw signal when it disagrees):
  - RSI: no buy above overbought, no sell below oversold
  - Volume: no trade while current volume < average volume * threshold
  - Trend strength: no trade while |short - long| / long * 100 is below
    the configured minimum
"""

from __future__ import annotations

from typing import Sequence

from tradeforge.core.logger import get_logger
from tradeforge.core.models import ConfirmationSignals
from tradeforge.exchange.base import Candle
from tradeforge.execution.state import ExecutionState
from tradeforge.strategies.base import (
    BUY,
    SELL,
    Signal,
    SignalGenerator,
    SignalParams,
    closes_of,
    volumes_of,
)
from tradeforge.utils.indicators import last, rsi, sma

logger = get_logger("strategy.moving_average")


class MovingAverageStrategy(SignalGenerator):
    kind = "moving_average"

    def __init__(self, confirmations: ConfirmationSignals | None = None):
        self.confirmations = confirmations or ConfirmationSignals()

    def lookback(self, params: SignalParams) -> int:
        need = max(params.short_period, params.long_period)
        if self.confirmations.use_rsi:
            need = max(need, self.confirmations.rsi_period + 1)
        return need

    def generate(
        self, candles: Sequence[Candle], state: ExecutionState, params: SignalParams
    ) -> Signal:
        closes = closes_of(candles)
        short_ma = last(sma(closes, params.short_period))
        long_ma = last(sma(closes, params.long_period))
        if short_ma is None or long_ma is None:
            return None

        signal: Signal = BUY if short_ma > long_ma else SELL
        return self._confirm(signal, candles, closes, short_ma, long_ma, params)

    def _confirm(self, signal, candles, closes, short_ma, long_ma, params) -> Signal:
        conf = self.confirmations

        if conf.use_rsi:
            current_rsi = last(rsi(closes, conf.rsi_period))
            if current_rsi is not None:
                if signal == BUY and current_rsi > conf.rsi_overbought:
                    logger.debug("Buy blocked by RSI", rsi=round(current_rsi, 2))
                    return None
                if signal == SELL and current_rsi < conf.rsi_oversold:
                    logger.debug("Sell blocked by RSI", rsi=round(current_rsi, 2))
                    return None

        if conf.use_volume:
            volumes = volumes_of(candles)
            avg_volume = last(sma(volumes, max(params.long_period, 1)))
            if avg_volume is not None and volumes[-1] < avg_volume * conf.volume_threshold:
                return None

        if conf.use_trend_strength and long_ma != 0:
            strength = abs(short_ma - long_ma) / long_ma * 100
            if strength < conf.min_trend_strength:
                return None

        return signal
