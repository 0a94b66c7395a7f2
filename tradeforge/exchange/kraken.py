"""
Kraken gateway - spot REST (api.kraken.com) plus Kraken Futures.

Inside the engine a perpetual contract is addressed with a ``.P`` suffix
(e.g. ``PF_XBTUSD.P``); the suffix routes the call to the futures API and
is stripped at the boundary, then restored on every symbol handed back.

Spot auth:    API-Sign = b64(HMAC-SHA512(b64d(secret), path + SHA256(nonce + postdata)))
Futures auth: Authent  = b64(HMAC-SHA512(b64d(secret), SHA256(postdata + nonce + endpoint)))

Kraken reports most spot failures with HTTP 200 and a non-empty ``error``
array, so those are mapped to the typed hierarchy here.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from tradeforge.core.logger import get_logger
from tradeforge.exchange.base import (
    Balance,
    Candle,
    ExchangeGateway,
    FundingRate,
    FuturesPosition,
    OrderRequest,
    OrderResult,
    _f,
    now_ms,
)
from tradeforge.exchange.exceptions import (
    AuthenticationError,
    ExchangeError,
    InsufficientFundsError,
    InvalidOrderError,
    RateLimitError,
    TransientExchangeError,
)

logger = get_logger("exchange")

FUTURES_SUFFIX = ".P"
_FUNDING_INTERVAL_MS = 8 * 60 * 60 * 1000


def is_futures_symbol(symbol: str) -> bool:
    return symbol.endswith(FUTURES_SUFFIX)


def to_exchange_symbol(symbol: str) -> str:
    return symbol[: -len(FUTURES_SUFFIX)] if is_futures_symbol(symbol) else symbol


def to_engine_symbol(symbol: str) -> str:
    return symbol if is_futures_symbol(symbol) else f"{symbol}{FUTURES_SUFFIX}"


class KrakenGateway(ExchangeGateway):
    name = "kraken"

    SPOT_URL = "https://api.kraken.com"
    FUTURES_URL = "https://futures.kraken.com"
    SANDBOX_SPOT_URL = "https://api-sandbox.kraken.com"
    SANDBOX_FUTURES_URL = "https://demo-futures.kraken.com"

    INTERVALS = {
        "1m": "1",
        "5m": "5",
        "15m": "15",
        "30m": "30",
        "1h": "60",
        "4h": "240",
        "1d": "1440",
        "1w": "10080",
    }
    # Kraken Futures charts use resolution names instead of minutes.
    FUTURES_RESOLUTIONS = {
        "1m": "1m", "5m": "5m", "15m": "15m", "30m": "30m",
        "1h": "1h", "4h": "4h", "12h": "12h", "1d": "1d", "1w": "1w",
    }
    STATUS_MAP = {
        "open": "pending",
        "pending": "pending",
        "placed": "pending",
        "untouched": "pending",
        "partiallyFilled": "pending",
        "closed": "filled",
        "fullyExecuted": "filled",
        "filled": "filled",
        "canceled": "cancelled",
        "cancelled": "cancelled",
        "expired": "cancelled",
        "rejected": "rejected",
    }

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        passphrase: Optional[str] = None,
        *,
        sandbox: bool = False,
        base_url: Optional[str] = None,
        futures_url: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(api_key, api_secret, passphrase, **kwargs)
        self.base_url = (base_url or (self.SANDBOX_SPOT_URL if sandbox else self.SPOT_URL)).rstrip("/")
        self.futures_url = (
            futures_url or (self.SANDBOX_FUTURES_URL if sandbox else self.FUTURES_URL)
        ).rstrip("/")
        self._last_nonce = 0

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def _nonce(self) -> str:
        # Strictly increasing even when two calls land in the same millisecond.
        nonce = max(int(time.time() * 1000), self._last_nonce + 1)
        self._last_nonce = nonce
        return str(nonce)

    def _secret_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.api_secret)
        except (binascii.Error, ValueError) as e:
            raise AuthenticationError("Kraken API secret is not valid base64") from e

    def sign_spot(self, path: str, nonce: str, postdata: str) -> str:
        digest = hashlib.sha256((nonce + postdata).encode()).digest()
        mac = hmac.new(self._secret_bytes(), path.encode() + digest, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    def sign_futures(self, endpoint: str, nonce: str, postdata: str) -> str:
        # The signed path omits the "/derivatives" routing prefix.
        signed_path = endpoint.removeprefix("/derivatives")
        digest = hashlib.sha256((postdata + nonce + signed_path).encode()).digest()
        mac = hmac.new(self._secret_bytes(), digest, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_spot_errors(data: Dict[str, Any]) -> None:
        errors = data.get("error") or []
        if not errors:
            return
        joined = ", ".join(errors)
        if any("Invalid key" in e or "Invalid signature" in e or "Invalid nonce" in e or "Permission denied" in e
               for e in errors):
            raise AuthenticationError(f"Kraken API error: {joined}")
        if any("Insufficient funds" in e for e in errors):
            raise InsufficientFundsError(f"Kraken API error: {joined}")
        if any("Rate limit" in e or "Too many requests" in e for e in errors):
            raise RateLimitError(f"Kraken API error: {joined}")
        if any(e.startswith("EService") for e in errors):
            raise TransientExchangeError(f"Kraken API error: {joined}")
        raise InvalidOrderError(f"Kraken API error: {joined}")

    @staticmethod
    def _check_futures_errors(data: Dict[str, Any]) -> None:
        if data.get("result") == "error" or (data.get("error") and data.get("error") != "none"):
            err = str(data.get("error", "unknown"))
            if "authentication" in err.lower() or "apiKey" in err:
                raise AuthenticationError(f"Kraken Futures API error: {err}")
            raise InvalidOrderError(f"Kraken Futures API error: {err}")

    async def _spot_public(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._send("GET", f"{self.base_url}/0/public/{method}", params=params)
        self._check_spot_errors(data)
        return data.get("result", {})

    async def _spot_private(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        path = f"/0/private/{method}"
        nonce = self._nonce()
        body = {"nonce": nonce, **{k: v for k, v in (params or {}).items() if v is not None}}
        postdata = urlencode(body)
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "API-Key": self.api_key,
            "API-Sign": self.sign_spot(path, nonce, postdata),
        }
        data = await self._send("POST", f"{self.base_url}{path}", content=postdata, headers=headers)
        self._check_spot_errors(data)
        return data.get("result", {})

    async def _futures_private(
        self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        nonce = self._nonce()
        postdata = urlencode({k: v for k, v in (params or {}).items() if v is not None})
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "APIKey": self.api_key,
            "Nonce": nonce,
            "Authent": self.sign_futures(endpoint, nonce, postdata),
        }
        url = f"{self.futures_url}{endpoint}"
        if method == "GET":
            data = await self._send("GET", f"{url}?{postdata}" if postdata else url, headers=headers)
        else:
            data = await self._send(method, url, content=postdata, headers=headers)
        self._check_futures_errors(data)
        return data

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        if is_futures_symbol(symbol):
            resolution = self.FUTURES_RESOLUTIONS.get(interval, "1m")
            data = await self._send(
                "GET",
                f"{self.futures_url}/api/charts/v1/trade/{to_exchange_symbol(symbol)}/{resolution}",
            )
            candles = [
                Candle(
                    time=int(c["time"]),
                    open=_f(c.get("open")),
                    high=_f(c.get("high")),
                    low=_f(c.get("low")),
                    close=_f(c.get("close")),
                    volume=_f(c.get("volume")),
                )
                for c in data.get("candles", [])
            ]
        else:
            result = await self._spot_public("OHLC", {"pair": symbol, "interval": self.map_interval(interval)})
            rows = result.get(symbol)
            if rows is None:
                rows = next((v for k, v in result.items() if k != "last"), [])
            # [time, open, high, low, close, vwap, volume, count]
            candles = [
                Candle(
                    time=int(row[0]) * 1000,
                    open=_f(row[1]),
                    high=_f(row[2]),
                    low=_f(row[3]),
                    close=_f(row[4]),
                    volume=_f(row[6]),
                )
                for row in rows
            ]
        candles.sort(key=lambda c: c.time)
        return candles[-limit:]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> OrderResult:
        request.validate()
        if is_futures_symbol(request.symbol):
            return await self._place_futures(request)
        result = await self._spot_private("AddOrder", {
            "pair": request.symbol,
            "type": request.side,
            "ordertype": request.type,
            "volume": str(request.quantity),
            "price": str(request.price) if request.type == "limit" else None,
        })
        txids = result.get("txid") or [""]
        return OrderResult(
            id=txids[0],
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            quantity=request.quantity,
            price=request.price or 0.0,
            status="pending",
        )

    async def _place_futures(self, request: OrderRequest) -> OrderResult:
        data = await self._futures_private("POST", "/derivatives/api/v3/sendorder", {
            "orderType": "mkt" if request.type == "market" else "lmt",
            "symbol": to_exchange_symbol(request.symbol),
            "side": request.side,
            "size": request.quantity,
            "limitPrice": request.price if request.type == "limit" else None,
        })
        status = data.get("sendStatus", {})
        events = status.get("orderEvents") or [{}]
        fill_price = _f(events[0].get("price")) if events else 0.0
        return OrderResult(
            id=str(status.get("order_id", "")),
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            quantity=request.quantity,
            price=fill_price or (request.price or 0.0),
            status=self.map_order_status(status.get("status", "placed")),
        )

    async def place_futures_order(self, request: OrderRequest) -> OrderResult:
        if not is_futures_symbol(request.symbol):
            request = OrderRequest(
                symbol=to_engine_symbol(request.symbol), side=request.side,
                type=request.type, quantity=request.quantity, price=request.price,
            )
        return await self.place_order(request)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            if is_futures_symbol(symbol):
                data = await self._futures_private(
                    "POST", "/derivatives/api/v3/cancelorder", {"order_id": order_id}
                )
                return data.get("cancelStatus", {}).get("status") == "cancelled"
            await self._spot_private("CancelOrder", {"txid": order_id})
            return True
        except ExchangeError as e:
            logger.warning("Kraken cancel failed", symbol=symbol, order_id=order_id, error=repr(e))
            return False

    async def get_order(self, symbol: str, order_id: str) -> OrderResult:
        if is_futures_symbol(symbol):
            data = await self._futures_private(
                "GET", "/derivatives/api/v3/orders/status", {"orderIds": order_id}
            )
            orders = data.get("orders") or [{}]
            order = orders[0].get("order", {})
            return OrderResult(
                id=order_id,
                symbol=symbol,
                side=str(order.get("side", "buy")).lower(),
                type="limit" if order.get("type") == "lmt" else "market",
                quantity=_f(order.get("quantity")),
                price=_f(order.get("limitPrice")),
                status=self.map_order_status(orders[0].get("status", "placed")),
            )
        result = await self._spot_private("QueryOrders", {"txid": order_id})
        order = result.get(order_id, {})
        descr = order.get("descr", {})
        return OrderResult(
            id=order_id,
            symbol=descr.get("pair", symbol),
            side=descr.get("type", "buy"),
            type=descr.get("ordertype", "market"),
            quantity=_f(order.get("vol")),
            price=_f(order.get("price")),
            status=self.map_order_status(order.get("status", "open")),
            timestamp=int(_f(order.get("opentm"), now_ms() / 1000) * 1000),
        )

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balance(self, asset: Optional[str] = None) -> List[Balance]:
        result = await self._spot_private("Balance")
        balances = [
            Balance(asset=name, free=_f(amount), locked=0.0, total=_f(amount))
            for name, amount in result.items()
            if _f(amount) > 0
        ]
        if asset:
            return [b for b in balances if b.asset == asset]
        return balances

    async def get_account_info(self) -> Dict[str, Any]:
        result = await self._spot_private("Balance")
        return {
            "maker_commission": 0.16,
            "taker_commission": 0.26,
            "can_trade": True,
            "accounts": result,
        }

    async def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        try:
            if is_futures_symbol(symbol):
                data = await self._futures_private("GET", "/derivatives/api/v3/openorders")
                target = to_exchange_symbol(symbol)
                return [o for o in data.get("openOrders", []) if o.get("symbol") == target]
            result = await self._spot_private("OpenOrders")
            orders = list((result.get("open") or {}).values())
            return [o for o in orders if o.get("descr", {}).get("pair") == symbol]
        except ExchangeError as e:
            logger.warning("Kraken open orders failed", symbol=symbol, error=repr(e))
            return []

    # ------------------------------------------------------------------
    # Futures
    # ------------------------------------------------------------------

    async def get_open_positions(self) -> List[FuturesPosition]:
        data = await self._futures_private("GET", "/derivatives/api/v3/openpositions")
        positions = []
        for pos in data.get("openPositions", []):
            size = _f(pos.get("size"))
            if size == 0:
                continue
            signed = size if pos.get("side", "long") == "long" else -size
            positions.append(FuturesPosition(
                symbol=to_engine_symbol(pos.get("symbol", "")),
                position_amt=signed,
                entry_price=_f(pos.get("price")),
                mark_price=_f(pos.get("markPrice"), _f(pos.get("price"))),
                unrealized_profit=_f(pos.get("unrealizedFunding")),
                leverage=_f(pos.get("maxFixedLeverage"), 1.0),
            ))
        return positions

    async def get_position(self, symbol: str) -> Optional[FuturesPosition]:
        target = to_engine_symbol(symbol)
        for pos in await self.get_open_positions():
            if pos.symbol == target:
                return pos
        return None

    async def get_leverage(self, symbol: str) -> float:
        data = await self._futures_private("GET", "/derivatives/api/v3/leveragepreferences")
        target = to_exchange_symbol(to_engine_symbol(symbol))
        for pref in data.get("leveragePreferences", []):
            if pref.get("symbol") == target:
                return _f(pref.get("maxLeverage"), 1.0)
        return 1.0

    async def set_leverage(self, symbol: str, leverage: float) -> bool:
        data = await self._futures_private("PUT", "/derivatives/api/v3/leveragepreferences", {
            "symbol": to_exchange_symbol(to_engine_symbol(symbol)),
            "maxLeverage": leverage,
        })
        return data.get("result") == "success"

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        target = to_exchange_symbol(to_engine_symbol(symbol))
        data = await self._send("GET", f"{self.futures_url}/derivatives/api/v3/tickers")
        for ticker in data.get("tickers", []):
            if ticker.get("symbol") == target:
                return FundingRate(
                    symbol=to_engine_symbol(target),
                    funding_rate=_f(ticker.get("fundingRate")),
                    # Kraken does not publish the next settlement time on the ticker.
                    next_funding_time=now_ms() + _FUNDING_INTERVAL_MS,
                )
        return FundingRate(symbol=to_engine_symbol(target), funding_rate=0.0, next_funding_time=now_ms())

    async def close_position(self, symbol: str) -> bool:
        position = await self.get_position(symbol)
        if position is None or position.position_amt == 0:
            return False
        data = await self._futures_private("POST", "/derivatives/api/v3/sendorder", {
            "orderType": "mkt",
            "symbol": to_exchange_symbol(position.symbol),
            "side": "sell" if position.position_amt > 0 else "buy",
            "size": abs(position.position_amt),
            "reduceOnly": "true",
        })
        return data.get("result") == "success"
