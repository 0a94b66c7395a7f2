"""
Coinbase Exchange gateway (spot only).

Auth headers: CB-ACCESS-KEY / SIGN / TIMESTAMP / PASSPHRASE, where SIGN is
base64(HMAC-SHA256(base64decode(secret), timestamp + METHOD + path + body)).
The futures surface is inherited as no-ops.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

from tradeforge.core.logger import get_logger
from tradeforge.exchange.base import (
    Balance,
    Candle,
    ExchangeGateway,
    OrderRequest,
    OrderResult,
    _f,
    now_ms,
)
from tradeforge.exchange.exceptions import ExchangeError

logger = get_logger("exchange")


class CoinbaseGateway(ExchangeGateway):
    name = "coinbase"

    BASE_URL = "https://api.exchange.coinbase.com"
    SANDBOX_URL = "https://api-public.sandbox.exchange.coinbase.com"

    INTERVALS = {
        "1m": "60",
        "5m": "300",
        "15m": "900",
        "1h": "3600",
        "6h": "21600",
        "1d": "86400",
    }
    STATUS_MAP = {
        "open": "pending",
        "pending": "pending",
        "active": "pending",
        "received": "pending",
        "done": "filled",
        "filled": "filled",
        "cancelled": "cancelled",
        "canceled": "cancelled",
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
        **kwargs: Any,
    ):
        super().__init__(api_key, api_secret, passphrase, **kwargs)
        self.base_url = (base_url or (self.SANDBOX_URL if sandbox else self.BASE_URL)).rstrip("/")

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, timestamp: str, method: str, path: str, body: str = "") -> str:
        try:
            key = base64.b64decode(self.api_secret)
        except (binascii.Error, ValueError):
            key = self.api_secret.encode()
        message = f"{timestamp}{method.upper()}{path}{body}".encode()
        return base64.b64encode(hmac.new(key, message, hashlib.sha256).digest()).decode()

    async def _private(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        timestamp = f"{time.time():.3f}"
        payload = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = {
            "Content-Type": "application/json",
            "CB-ACCESS-KEY": self.api_key,
            "CB-ACCESS-SIGN": self.sign(timestamp, method, path, payload),
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": self.passphrase,
        }
        return await self._send(
            method, f"{self.base_url}{path}", content=payload or None, headers=headers
        )

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        rows = await self._send(
            "GET",
            f"{self.base_url}/products/{symbol}/candles",
            params={"granularity": self.map_interval(interval)},
        )
        # Rows are [time_s, low, high, open, close, volume], newest first.
        candles = [
            Candle(
                time=int(row[0]) * 1000,
                open=_f(row[3]),
                high=_f(row[2]),
                low=_f(row[1]),
                close=_f(row[4]),
                volume=_f(row[5]),
            )
            for row in rows or []
        ]
        candles.sort(key=lambda c: c.time)
        return candles[-limit:]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> OrderResult:
        request.validate()
        body: Dict[str, Any] = {
            "product_id": request.symbol,
            "side": request.side,
            "type": request.type,
            "size": str(request.quantity),
        }
        if request.type == "limit":
            body["price"] = str(request.price)
            body["time_in_force"] = "GTC"
        order = await self._private("POST", "/orders", body)
        return self._to_order(order, request)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            await self._private("DELETE", f"/orders/{order_id}")
            return True
        except ExchangeError as e:
            logger.warning("Coinbase cancel failed", symbol=symbol, order_id=order_id, error=repr(e))
            return False

    async def get_order(self, symbol: str, order_id: str) -> OrderResult:
        order = await self._private("GET", f"/orders/{order_id}")
        return self._to_order(order, OrderRequest(symbol=symbol, side="buy"), fallback_id=order_id)

    def _to_order(self, order: Dict[str, Any], request: OrderRequest, fallback_id: str = "") -> OrderResult:
        filled = _f(order.get("filled_size"))
        executed_value = _f(order.get("executed_value"))
        price = _f(order.get("price")) or (executed_value / filled if filled else 0.0)
        return OrderResult(
            id=str(order.get("id") or fallback_id),
            symbol=order.get("product_id") or request.symbol,
            side=str(order.get("side") or request.side).lower(),
            type=str(order.get("type") or request.type).lower(),
            quantity=filled or _f(order.get("size")) or request.quantity,
            price=price,
            status=self.map_order_status(order.get("status", "pending")),
            timestamp=now_ms(),
        )

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balance(self, asset: Optional[str] = None) -> List[Balance]:
        accounts = await self._private("GET", "/accounts")
        balances = []
        for account in accounts or []:
            free, locked = _f(account.get("available")), _f(account.get("hold"))
            if free > 0 or locked > 0:
                balances.append(Balance(
                    asset=account.get("currency", ""), free=free, locked=locked, total=free + locked,
                ))
        if asset:
            return [b for b in balances if b.asset == asset]
        return balances

    async def get_account_info(self) -> Dict[str, Any]:
        accounts = await self._private("GET", "/accounts")
        return {
            "maker_commission": 0.4,
            "taker_commission": 0.6,
            "can_trade": True,
            "accounts": accounts,
        }

    async def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        try:
            data = await self._private("GET", f"/orders?status=open&product_id={symbol}")
            return data if isinstance(data, list) else data.get("orders", [])
        except ExchangeError as e:
            logger.warning("Coinbase open orders failed", symbol=symbol, error=repr(e))
            return []
