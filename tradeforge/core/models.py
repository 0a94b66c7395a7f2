"""
Domain Models - Bots, strategy definitions and persisted trade records.

Bots and strategies are user-authored and validated with Pydantic; the
strategy attached to a bot is a tagged union discriminated by ``kind`` so
the controller can dispatch exhaustively instead of poking at free-form
dicts.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from tradeforge.exchange.exceptions import InvalidStrategyParamsError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketType(str, Enum):
    SPOT = "spot"
    FUTURES = "futures"


class PositionSide(str, Enum):
    BOTH = "both"
    LONG = "long"
    SHORT = "short"


class BotMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class BotStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


class VolatilityRegime(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ManualSignalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class Credential(BaseModel):
    """Already-decrypted exchange credentials handed in by the credential store."""
    exchange: str
    api_key: str = ""
    api_secret: str = ""
    passphrase: Optional[str] = None

    def __repr__(self) -> str:
        return f"Credential(exchange={self.exchange!r}, api_key=****)"


# ---------------------------------------------------------------------------
# Risk / regime configuration attached to a bot
# ---------------------------------------------------------------------------

class RiskLimits(BaseModel):
    max_daily_loss: float = 500.0
    max_position_size: float = 1000.0
    stop_loss_pct: float = 5.0
    take_profit_pct: float = 10.0

    @field_validator("max_daily_loss", "max_position_size", "stop_loss_pct", "take_profit_pct")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("risk limits must be non-negative")
        return v


class RegimeParams(BaseModel):
    short_period: int = 5
    long_period: int = 20
    quantity: float = 1.0


class VolatilityConfig(BaseModel):
    enabled: bool = False
    atr_period: int = 14
    low_volatility_threshold: float = 0.5
    high_volatility_threshold: float = 2.0
    low_volatility_strategy: RegimeParams = Field(default_factory=RegimeParams)
    normal_volatility_strategy: RegimeParams = Field(default_factory=RegimeParams)
    high_volatility_strategy: RegimeParams = Field(default_factory=RegimeParams)


class DrawdownConfig(BaseModel):
    enabled: bool = False
    max_drawdown: float = 10.0
    trailing_stop: bool = False
    trailing_stop_distance: float = 5.0


class ConfirmationSignals(BaseModel):
    use_rsi: bool = False
    rsi_period: int = 14
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    use_volume: bool = False
    volume_threshold: float = 1000.0
    use_trend_strength: bool = False
    min_trend_strength: float = 0.5


class Performance(BaseModel):
    pnl: float = 0.0
    win_rate: float = 0.0
    trade_count: int = 0
    last_trade_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Strategy sum type
# ---------------------------------------------------------------------------

class _StrategySpecBase(BaseModel):
    symbol: Optional[str] = None
    quantity: Optional[float] = None
    interval: str = "1m"

    def _require(self, *names: str) -> None:
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise InvalidStrategyParamsError(
                f"Bot strategy parameters missing: {', '.join(missing)}"
            )


class MovingAverageSpec(_StrategySpecBase):
    kind: Literal["moving_average"] = "moving_average"
    short_period: Optional[int] = None
    long_period: Optional[int] = None

    def require_complete(self) -> None:
        self._require("symbol", "short_period", "long_period", "quantity")
        if self.short_period <= 0 or self.long_period <= 0 or self.quantity <= 0:
            raise InvalidStrategyParamsError("periods and quantity must be positive")

    @property
    def lookback(self) -> int:
        return max(self.short_period or 0, self.long_period or 0)


class RSISpec(_StrategySpecBase):
    kind: Literal["rsi"] = "rsi"
    period: int = 14
    overbought: float = 70.0
    oversold: float = 30.0

    def require_complete(self) -> None:
        self._require("symbol", "quantity")
        if self.period <= 0 or self.quantity <= 0:
            raise InvalidStrategyParamsError("period and quantity must be positive")
        if self.oversold >= self.overbought:
            raise InvalidStrategyParamsError("oversold must be below overbought")

    @property
    def lookback(self) -> int:
        return self.period + 1


class ConfigDrivenSpec(_StrategySpecBase):
    """Points at a stored StrategyConfig; the rules live there."""
    kind: Literal["config"] = "config"
    strategy_id: Optional[str] = None
    short_period: Optional[int] = None
    long_period: Optional[int] = None

    def require_complete(self) -> None:
        self._require("symbol", "quantity", "strategy_id")
        if self.quantity <= 0:
            raise InvalidStrategyParamsError("quantity must be positive")

    @property
    def lookback(self) -> int:
        return max(self.short_period or 0, self.long_period or 0)


StrategySpec = Annotated[
    Union[MovingAverageSpec, RSISpec, ConfigDrivenSpec],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Config-driven strategy definition (stored separately from bots)
# ---------------------------------------------------------------------------

class IndicatorDecl(BaseModel):
    name: str
    type: Literal["sma", "ema", "rsi", "macd", "bollinger", "stochastic", "atr", "volume_sma"]
    period: int = 14
    params: Dict[str, float] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not (v[0].isalpha() or v[0] == "_") or not all(c.isalnum() or c == "_" for c in v):
            raise ValueError(f"indicator name {v!r} must be an identifier")
        return v


class RuleDecl(BaseModel):
    condition: str
    action: Literal["buy", "sell"]


class ConfigRisk(BaseModel):
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    auto_reverse: bool = True


class StrategyDefinition(BaseModel):
    indicators: List[IndicatorDecl] = Field(default_factory=list)
    rules: List[RuleDecl] = Field(default_factory=list)
    risk: ConfigRisk = Field(default_factory=ConfigRisk)


class StrategyConfig(BaseModel):
    id: str
    user_id: str
    name: str
    config: StrategyDefinition = Field(default_factory=StrategyDefinition)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------

class Bot(BaseModel):
    id: str
    user_id: str
    name: str
    exchange: str
    credential_id: Optional[str] = None
    strategy: StrategySpec
    market_type: MarketType = MarketType.SPOT
    leverage: float = 1.0
    position_side: PositionSide = PositionSide.BOTH
    mode: BotMode = BotMode.AUTO
    paper_trading: bool = True
    paper_balance: float = 10000.0
    risk_limits: RiskLimits = Field(default_factory=RiskLimits)
    volatility_config: VolatilityConfig = Field(default_factory=VolatilityConfig)
    drawdown_config: DrawdownConfig = Field(default_factory=DrawdownConfig)
    confirmation_signals: ConfirmationSignals = Field(default_factory=ConfirmationSignals)
    status: BotStatus = BotStatus.STOPPED
    performance: Performance = Field(default_factory=Performance)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("leverage")
    @classmethod
    def validate_leverage(cls, v):
        if v < 1 or v > 125:
            raise ValueError("leverage must be between 1 and 125")
        return v

    @field_validator("paper_balance")
    @classmethod
    def validate_paper_balance(cls, v):
        if v < 0:
            raise ValueError("paper_balance must be non-negative")
        return v

    @property
    def is_futures(self) -> bool:
        return self.market_type == MarketType.FUTURES


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class TradeRecord(BaseModel):
    """One live fill (append-only)."""
    bot_id: str
    user_id: str
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float
    price: float
    status: str = "filled"
    exchange: str = ""
    order_id: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class PaperTradeRecord(TradeRecord):
    """One simulated fill with the ledger balance after it."""
    paper_balance: float = 0.0
    trade_type: str = "paper"
    pnl: float = 0.0


class BotLogEntry(BaseModel):
    bot_id: str
    type: Literal["info", "warning", "error"] = "info"
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class ManualTradeSignal(BaseModel):
    id: Optional[int] = None
    bot_id: str
    user_id: str
    signal: Literal["buy", "sell"]
    symbol: str
    price: float
    quantity: float
    market_type: MarketType
    leverage: float
    position_side: PositionSide
    status: ManualSignalStatus = ManualSignalStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
