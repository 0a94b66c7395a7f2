"""
Binance gateway - spot (api/v3) and USD-M futures (fapi).

Signed requests carry ``timestamp`` plus an HMAC-SHA256 hex ``signature``
over the urlencoded query, with the key in ``X-MBX-APIKEY``.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

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
    _path,
    now_ms,
)
from tradeforge.exchange.exceptions import AuthenticationError, ExchangeError

logger = get_logger("exchange")


class BinanceGateway(ExchangeGateway):
    name = "binance"

    SPOT_URL = "https://api.binance.com"
    FUTURES_URL = "https://fapi.binance.com"
    TESTNET_SPOT_URL = "https://testnet.binance.vision"
    TESTNET_FUTURES_URL = "https://testnet.binancefuture.com"

    INTERVALS = {
        iv: iv for iv in (
            "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h",
            "6h", "8h", "12h", "1d", "3d", "1w", "1M",
        )
    }
    STATUS_MAP = {
        "NEW": "pending",
        "PARTIALLY_FILLED": "pending",
        "FILLED": "filled",
        "CANCELED": "cancelled",
        "REJECTED": "rejected",
        "EXPIRED": "rejected",
    }
    # Signature, key/IP and permission rejections arrive as HTTP 400.
    AUTH_ERROR_CODES = {-1022, -2014, -2015}

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        passphrase: Optional[str] = None,
        *,
        testnet: bool = False,
        base_url: Optional[str] = None,
        futures_url: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(api_key, api_secret, passphrase, **kwargs)
        self.testnet = testnet
        if testnet:
            self.name = "binance_testnet"
        self.base_url = (base_url or (self.TESTNET_SPOT_URL if testnet else self.SPOT_URL)).rstrip("/")
        self.futures_url = (
            futures_url or (self.TESTNET_FUTURES_URL if testnet else self.FUTURES_URL)
        ).rstrip("/")

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign_params(self, params: Dict[str, Any]) -> str:
        """Return the urlencoded query with ``signature`` appended."""
        query = urlencode(params)
        signature = hmac.new(
            self.api_secret.encode(), query.encode(), hashlib.sha256
        ).hexdigest()
        return f"{query}&signature={signature}"

    async def _signed(self, method: str, base: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        payload = {k: v for k, v in (params or {}).items() if v is not None}
        payload["timestamp"] = now_ms()
        query = self.sign_params(payload)
        return await self._send(
            method,
            f"{base}{path}?{query}",
            headers={"X-MBX-APIKEY": self.api_key},
        )

    def _raise_for_status(self, resp: httpx.Response) -> None:
        try:
            code = resp.json().get("code")
        except (ValueError, AttributeError):
            code = None
        if code in self.AUTH_ERROR_CODES:
            where = f"{self.name} {resp.request.method} {_path(str(resp.request.url))}"
            raise AuthenticationError(
                f"{where} rejected credentials ({code}): {resp.text[:300]}"
            )
        super()._raise_for_status(resp)

    # ------------------------------------------------------------------
    # Spot
    # ------------------------------------------------------------------

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        rows = await self._send(
            "GET",
            f"{self.base_url}/api/v3/klines",
            params={"symbol": symbol, "interval": self.map_interval(interval), "limit": limit},
        )
        candles = [
            Candle(
                time=int(row[0]),
                open=_f(row[1]),
                high=_f(row[2]),
                low=_f(row[3]),
                close=_f(row[4]),
                volume=_f(row[5]),
            )
            for row in rows
        ]
        candles.sort(key=lambda c: c.time)
        return candles[-limit:]

    async def place_order(self, request: OrderRequest) -> OrderResult:
        request.validate()
        params: Dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side.upper(),
            "type": request.type.upper(),
            "quantity": request.quantity,
        }
        if request.type == "limit":
            params["price"] = request.price
            params["timeInForce"] = "GTC"
        order = await self._signed("POST", self.base_url, "/api/v3/order", params)
        return self._to_order(order, request.symbol, request.side, request.type)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            await self._signed("DELETE", self.base_url, "/api/v3/order", {"symbol": symbol, "orderId": order_id})
            return True
        except ExchangeError as e:
            logger.warning("Binance cancel failed", symbol=symbol, order_id=order_id, error=repr(e))
            return False

    async def get_order(self, symbol: str, order_id: str) -> OrderResult:
        order = await self._signed("GET", self.base_url, "/api/v3/order", {"symbol": symbol, "orderId": order_id})
        return self._to_order(order, symbol, "buy", "market", fallback_id=order_id)

    async def get_balance(self, asset: Optional[str] = None) -> List[Balance]:
        account = await self.get_account_info()
        balances = []
        for b in account.get("balances", []):
            free, locked = _f(b.get("free")), _f(b.get("locked"))
            if free > 0 or locked > 0:
                balances.append(Balance(asset=b.get("asset", ""), free=free, locked=locked, total=free + locked))
        if asset:
            return [b for b in balances if b.asset == asset]
        return balances

    async def get_account_info(self) -> Dict[str, Any]:
        return await self._signed("GET", self.base_url, "/api/v3/account")

    async def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        try:
            data = await self._signed("GET", self.base_url, "/api/v3/openOrders", {"symbol": symbol})
            return data or []
        except ExchangeError as e:
            logger.warning("Binance open orders failed", symbol=symbol, error=repr(e))
            return []

    def _to_order(
        self,
        order: Dict[str, Any],
        symbol: str,
        side: str,
        order_type: str,
        fallback_id: str = "",
    ) -> OrderResult:
        qty = _f(order.get("executedQty")) or _f(order.get("origQty"))
        price = _f(order.get("price"))
        if not price and qty:
            # Market fills report a zero price; derive the average from quote volume.
            price = _f(order.get("cummulativeQuoteQty")) / qty
        return OrderResult(
            id=str(order.get("orderId") or fallback_id),
            symbol=order.get("symbol") or symbol,
            side=str(order.get("side") or side).lower(),
            type=str(order.get("type") or order_type).lower(),
            quantity=qty,
            price=price,
            status=self.map_order_status(order.get("status") or "NEW"),
            timestamp=int(order.get("transactTime") or order.get("time") or now_ms()),
        )

    # ------------------------------------------------------------------
    # USD-M futures
    # ------------------------------------------------------------------

    async def get_open_positions(self) -> List[FuturesPosition]:
        data = await self._signed("GET", self.futures_url, "/fapi/v2/positionRisk")
        positions = []
        for pos in data or []:
            amt = _f(pos.get("positionAmt"))
            if amt == 0:
                continue
            positions.append(FuturesPosition(
                symbol=pos.get("symbol", ""),
                position_amt=amt,
                entry_price=_f(pos.get("entryPrice")),
                mark_price=_f(pos.get("markPrice")),
                unrealized_profit=_f(pos.get("unRealizedProfit")),
                leverage=_f(pos.get("leverage"), 1.0),
                margin_type=pos.get("marginType", "cross"),
                isolated_margin=_f(pos.get("isolatedMargin")),
                liquidation_price=_f(pos.get("liquidationPrice")),
            ))
        return positions

    async def get_leverage(self, symbol: str) -> float:
        data = await self._signed("GET", self.futures_url, "/fapi/v2/positionRisk", {"symbol": symbol})
        if isinstance(data, list) and data:
            return _f(data[0].get("leverage"), 1.0)
        return 1.0

    async def set_leverage(self, symbol: str, leverage: float) -> bool:
        data = await self._signed(
            "POST", self.futures_url, "/fapi/v1/leverage",
            {"symbol": symbol, "leverage": int(leverage)},
        )
        return bool(data) and int(_f(data.get("leverage"))) == int(leverage)

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        data = await self._send(
            "GET", f"{self.futures_url}/fapi/v1/premiumIndex", params={"symbol": symbol}
        )
        if isinstance(data, list):
            data = data[0] if data else {}
        if not data:
            return FundingRate(symbol=symbol, funding_rate=0.0, next_funding_time=now_ms())
        return FundingRate(
            symbol=data.get("symbol", symbol),
            funding_rate=_f(data.get("lastFundingRate")),
            next_funding_time=int(_f(data.get("nextFundingTime"), now_ms())),
        )

    async def close_position(self, symbol: str) -> bool:
        position = await self.get_position(symbol)
        if position is None or position.position_amt == 0:
            return False
        params = {
            "symbol": symbol,
            "side": "SELL" if position.position_amt > 0 else "BUY",
            "type": "MARKET",
            "quantity": abs(position.position_amt),
            "reduceOnly": "true",
        }
        data = await self._signed("POST", self.futures_url, "/fapi/v1/order", params)
        return bool(data and data.get("orderId"))

    async def place_futures_order(self, request: OrderRequest) -> OrderResult:
        request.validate()
        params: Dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side.upper(),
            "type": request.type.upper(),
            "quantity": request.quantity,
        }
        if request.type == "limit":
            params["price"] = request.price
            params["timeInForce"] = "GTC"
        order = await self._signed("POST", self.futures_url, "/fapi/v1/order", params)
        return self._to_order(order, request.symbol, request.side, request.type)
