"""
Exchange Gateway - the single seam between the engine and exchange REST APIs.

Every exchange implementation normalizes klines, orders, balances and the
futures surface into the dataclasses below. Gateways own their signing
scheme, symbol transforms and interval naming; nothing outside this
package sees an exchange-specific payload.

HTTP plumbing (client lifecycle, bounded timeouts, status-code to typed
exception mapping) lives here so each gateway only deals with paths,
payloads and signatures.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

import httpx

from tradeforge.core.logger import get_logger
from tradeforge.exchange.exceptions import (
    AuthenticationError,
    ExchangeTimeoutError,
    InsufficientFundsError,
    InvalidOrderError,
    RateLimitError,
    TransientExchangeError,
)

logger = get_logger("exchange")

OrderStatus = Literal["pending", "filled", "cancelled", "rejected"]


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Normalized data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Candle:
    """One exchange-normalized OHLCV bar. ``time`` is epoch milliseconds."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class OrderRequest:
    symbol: str
    side: Literal["buy", "sell"]
    type: Literal["market", "limit"] = "market"
    quantity: float = 0.0
    price: Optional[float] = None

    def validate(self) -> None:
        if self.side not in ("buy", "sell"):
            raise InvalidOrderError(f"Invalid order side: {self.side}")
        if self.quantity <= 0:
            raise InvalidOrderError("Order quantity must be positive")
        if self.type == "limit" and not self.price:
            raise InvalidOrderError("Limit orders require a price")
        if self.type not in ("market", "limit"):
            raise InvalidOrderError(f"Unsupported order type: {self.type}")


@dataclass
class OrderResult:
    id: str
    symbol: str
    side: str
    type: str
    quantity: float
    price: float
    status: OrderStatus
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Balance:
    asset: str
    free: float
    locked: float
    total: float


@dataclass
class FuturesPosition:
    symbol: str
    position_amt: float
    entry_price: float
    mark_price: float = 0.0
    unrealized_profit: float = 0.0
    leverage: float = 1.0
    margin_type: str = "cross"
    isolated_margin: float = 0.0
    liquidation_price: float = 0.0
    timestamp: int = field(default_factory=now_ms)


@dataclass
class FundingRate:
    symbol: str
    funding_rate: float
    next_funding_time: int


def _f(value: Any, default: float = 0.0) -> float:
    """Exchanges send numbers as strings, empty strings or nulls."""
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Gateway contract
# ---------------------------------------------------------------------------

class ExchangeGateway(ABC):
    """
    Abstract exchange gateway. One instance per ``{exchange, credentials}``.

    Subclasses set ``name``, ``INTERVALS`` and ``STATUS_MAP`` and implement
    the abstract operations. Exchanges without a futures product inherit
    the no-op futures surface below so the interface stays total.
    """

    name: str = ""
    INTERVALS: Dict[str, str] = {}
    DEFAULT_INTERVAL: str = "1m"
    STATUS_MAP: Dict[str, OrderStatus] = {}

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        passphrase: Optional[str] = None,
        *,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.api_secret = (api_secret or "").strip()
        self.passphrase = passphrase or ""
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        """True when the gateway can make authenticated calls."""
        return bool(self.api_key and self.api_secret)

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> ExchangeGateway:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        data: Any = None,
        json: Any = None,
        content: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Perform one HTTP call and return decoded JSON, raising typed errors."""
        if self._client is None:
            await self.initialize()
        try:
            resp = await self._client.request(
                method, url, params=params, data=data, json=json,
                content=content, headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ExchangeTimeoutError(f"{self.name} {method} {_path(url)} timed out") from e
        except httpx.TransportError as e:
            raise TransientExchangeError(f"{self.name} transport error: {e!r}") from e

        if resp.status_code >= 400:
            self._raise_for_status(resp)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise TransientExchangeError(
                f"{self.name} returned non-JSON body ({resp.status_code})"
            ) from e

    def _raise_for_status(self, resp: httpx.Response) -> None:
        body = resp.text[:300]
        status = resp.status_code
        where = f"{self.name} {resp.request.method} {_path(str(resp.request.url))}"
        if status == 429:
            retry_after = _f(resp.headers.get("Retry-After"), 0.0)
            raise RateLimitError(f"{where} rate limited", retry_after=retry_after)
        if status in (401, 403):
            raise AuthenticationError(f"{where} rejected credentials ({status}): {body}")
        if status >= 500:
            raise TransientExchangeError(f"{where} server error ({status}): {body}")
        if "insufficient" in body.lower():
            raise InsufficientFundsError(f"{where}: {body}")
        raise InvalidOrderError(f"{where} ({status}): {body}")

    # ------------------------------------------------------------------
    # Static metadata
    # ------------------------------------------------------------------

    def get_exchange_name(self) -> str:
        return self.name

    def get_supported_intervals(self) -> Dict[str, str]:
        return dict(self.INTERVALS)

    def map_interval(self, interval: str) -> str:
        return self.INTERVALS.get(interval, self.INTERVALS[self.DEFAULT_INTERVAL])

    def map_order_status(self, raw: str) -> OrderStatus:
        return self.STATUS_MAP.get(str(raw or ""), "pending")

    # ------------------------------------------------------------------
    # Market data & orders
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_klines(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        """Return up to ``limit`` most recent candles in ascending time order."""

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResult:
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        ...

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> OrderResult:
        ...

    @abstractmethod
    async def get_balance(self, asset: Optional[str] = None) -> List[Balance]:
        ...

    @abstractmethod
    async def get_account_info(self) -> Dict[str, Any]:
        ...

    async def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        return []

    async def validate_credentials(self) -> bool:
        """
        Perform one authenticated call.

        Returns False when the exchange rejects the credentials. Timeouts and
        other infrastructure failures propagate so the caller can treat the
        result as undetermined rather than invalid.
        """
        try:
            await self.get_account_info()
            return True
        except AuthenticationError as e:
            logger.info("Credential validation rejected", exchange=self.name, error=str(e))
            return False

    # ------------------------------------------------------------------
    # Futures surface (no-op defaults for spot-only exchanges)
    # ------------------------------------------------------------------

    async def get_open_positions(self) -> List[FuturesPosition]:
        return []

    async def get_position(self, symbol: str) -> Optional[FuturesPosition]:
        for pos in await self.get_open_positions():
            if pos.symbol == symbol:
                return pos
        return None

    async def get_leverage(self, symbol: str) -> float:
        return 1.0

    async def set_leverage(self, symbol: str, leverage: float) -> bool:
        return True

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        return FundingRate(symbol=symbol, funding_rate=0.0, next_funding_time=now_ms())

    async def close_position(self, symbol: str) -> bool:
        return True

    async def place_futures_order(self, request: OrderRequest) -> OrderResult:
        """Order entry on the derivatives venue; same venue unless overridden."""
        return await self.place_order(request)


def _path(url: str) -> str:
    """Strip host and query so signed parameters never reach error messages."""
    return httpx.URL(url).path
