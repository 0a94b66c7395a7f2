"""
Capital.com gateway - CFD trading over a session-token REST API.

``api_key`` is the login identifier and ``api_secret`` the API password.
A session is opened with POST /api/v1/session; the returned access token
is sent as a bearer token until it expires. A 401 on any authenticated
call clears the token, re-authenticates and retries exactly once.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

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
from tradeforge.exchange.exceptions import AuthenticationError, ExchangeError

logger = get_logger("exchange")

_DEFAULT_SESSION_SECONDS = 600


def _parse_time_ms(value: Any) -> int:
    """Capital.com timestamps are ISO strings without a zone (UTC)."""
    if value is None:
        return now_ms()
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).replace("Z", "")
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f", "%Y-%m-%dT%H:%M:%S"):
        try:
            dt = datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
        except ValueError:
            continue
    return now_ms()


class CapitalComGateway(ExchangeGateway):
    name = "capital_com"

    BASE_URL = "https://api-capital.backend-capital.com"
    DEMO_URL = "https://demo-api-capital.backend-capital.com"

    INTERVALS = {
        "1m": "MINUTE",
        "5m": "MINUTE_5",
        "15m": "MINUTE_15",
        "30m": "MINUTE_30",
        "1h": "HOUR",
        "4h": "HOUR_4",
        "1d": "DAY",
        "1w": "WEEK",
    }
    STATUS_MAP = {
        "OPEN": "pending",
        "ACCEPTED": "filled",
        "CONFIRMED": "filled",
        "CANCELLED": "cancelled",
        "DELETED": "cancelled",
        "REJECTED": "rejected",
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
        self.base_url = (base_url or (self.DEMO_URL if sandbox else self.BASE_URL)).rstrip("/")
        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def authenticate(self) -> str:
        data = await self._send(
            "POST",
            f"{self.base_url}/api/v1/session",
            json={"identifier": self.api_key, "password": self.api_secret},
            headers={"Content-Type": "application/json"},
        )
        token = data.get("accessToken") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError("Capital.com session response carried no access token")
        expires_in = _f(data.get("expiresIn"), _DEFAULT_SESSION_SECONDS)
        self._access_token = token
        self._token_expiry = time.time() + expires_in
        logger.debug("Capital.com session opened", expires_in=expires_in)
        return token

    async def _ensure_token(self) -> str:
        if not self._access_token or time.time() >= self._token_expiry:
            return await self.authenticate()
        return self._access_token

    async def _authed(self, method: str, path: str, *, params: Any = None, body: Any = None) -> Any:
        retried = False
        while True:
            token = await self._ensure_token()
            headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
            try:
                return await self._send(
                    method, f"{self.base_url}{path}", params=params, json=body, headers=headers,
                )
            except AuthenticationError:
                if retried:
                    raise
                retried = True
                logger.info("Capital.com token rejected, re-authenticating", path=path)
                self._access_token = None
                self._token_expiry = 0.0

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        data = await self._authed(
            "GET",
            f"/api/v1/prices/{symbol}/{self.map_interval(interval)}",
            params={"limit": limit},
        )
        candles = [
            Candle(
                time=_parse_time_ms(p.get("snapshotTimeUTC") or p.get("snapshotTime")),
                open=_f((p.get("openPrice") or {}).get("bid")),
                high=_f((p.get("highPrice") or {}).get("bid")),
                low=_f((p.get("lowPrice") or {}).get("bid")),
                close=_f((p.get("closePrice") or {}).get("bid")),
                volume=_f(p.get("lastTradedVolume")),
            )
            for p in data.get("prices", [])
        ]
        candles.sort(key=lambda c: c.time)
        return candles[-limit:]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> OrderResult:
        request.validate()
        body: Dict[str, Any] = {
            "epic": request.symbol,
            "direction": request.side.upper(),
            "size": request.quantity,
            "orderType": request.type.upper(),
            "guaranteedStop": False,
            "timeInForce": "GOOD_TILL_CANCELLED",
        }
        if request.type == "limit":
            body["level"] = request.price
        data = await self._authed("POST", "/api/v1/positions", body=body)
        return OrderResult(
            id=str(data.get("dealReference", "")),
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            quantity=request.quantity,
            price=request.price or 0.0,
            status="pending",
        )

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            await self._authed("DELETE", f"/api/v1/positions/{order_id}")
            return True
        except ExchangeError as e:
            logger.warning("Capital.com cancel failed", symbol=symbol, order_id=order_id, error=repr(e))
            return False

    async def get_order(self, symbol: str, order_id: str) -> OrderResult:
        data = await self._authed("GET", f"/api/v1/positions/{order_id}")
        position = data.get("position", {})
        return OrderResult(
            id=order_id,
            symbol=(data.get("market") or {}).get("epic", symbol),
            side=str(position.get("direction", "BUY")).lower(),
            type="market",
            quantity=_f(position.get("size")),
            price=_f(position.get("level")),
            status=self.map_order_status(position.get("status") or "CONFIRMED"),
            timestamp=_parse_time_ms(position.get("createdDateUTC")),
        )

    async def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        try:
            data = await self._authed("GET", "/api/v1/workingorders")
        except ExchangeError as e:
            logger.warning("Capital.com working orders failed", symbol=symbol, error=repr(e))
            return []
        return [
            o for o in data.get("workingOrders", [])
            if (o.get("marketData") or {}).get("epic") == symbol
        ]

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balance(self, asset: Optional[str] = None) -> List[Balance]:
        data = await self._authed("GET", "/api/v1/accounts")
        balances = []
        for account in data.get("accounts", []):
            bal = account.get("balance") or {}
            free = _f(bal.get("available"))
            total = _f(bal.get("deposit"), free)
            balances.append(Balance(
                asset=account.get("currency", ""), free=free, locked=max(total - free, 0.0), total=total,
            ))
        if asset:
            return [b for b in balances if b.asset == asset]
        return balances

    async def get_account_info(self) -> Dict[str, Any]:
        data = await self._authed("GET", "/api/v1/accounts")
        return {
            "maker_commission": 0.0,
            "taker_commission": 0.0,
            "can_trade": True,
            "accounts": data.get("accounts", []),
        }

    # ------------------------------------------------------------------
    # Leveraged positions
    # ------------------------------------------------------------------

    async def get_open_positions(self) -> List[FuturesPosition]:
        data = await self._authed("GET", "/api/v1/positions")
        positions = []
        for item in data.get("positions", []):
            pos = item.get("position") or {}
            market = item.get("market") or {}
            size = _f(pos.get("size"))
            if size == 0:
                continue
            positions.append(FuturesPosition(
                symbol=market.get("epic", ""),
                position_amt=size if pos.get("direction") == "BUY" else -size,
                entry_price=_f(pos.get("level")),
                mark_price=_f(market.get("bid")),
                unrealized_profit=_f(pos.get("upl")),
                leverage=_f(pos.get("leverage"), 1.0),
            ))
        return positions

    async def get_leverage(self, symbol: str) -> float:
        data = await self._authed("GET", f"/api/v1/markets/{symbol}")
        return _f((data.get("instrument") or {}).get("leverage"), 1.0)

    async def set_leverage(self, symbol: str, leverage: float) -> bool:
        try:
            await self._authed("PUT", f"/api/v1/positions/{symbol}/leverage", body={"leverage": leverage})
            return True
        except ExchangeError as e:
            logger.warning("Capital.com set leverage failed", symbol=symbol, error=repr(e))
            return False

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        data = await self._authed("GET", f"/api/v1/markets/{symbol}")
        instrument = data.get("instrument") or {}
        next_time = instrument.get("nextFundingTime")
        return FundingRate(
            symbol=symbol,
            funding_rate=_f(instrument.get("fundingRate")),
            next_funding_time=_parse_time_ms(next_time) if next_time else now_ms(),
        )

    async def close_position(self, symbol: str) -> bool:
        position = await self.get_position(symbol)
        if position is None:
            return False
        await self._authed("POST", "/api/v1/positions/close", body={
            "epic": symbol,
            "direction": "SELL" if position.position_amt > 0 else "BUY",
            "size": abs(position.position_amt),
        })
        return True
