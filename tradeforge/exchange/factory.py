"""Gateway construction by exchange name."""

from __future__ import annotations

from typing import Dict, Optional, Type

import httpx

from tradeforge.core.config import ExchangeConfig, get_config
from tradeforge.core.models import Credential
from tradeforge.exchange.base import ExchangeGateway
from tradeforge.exchange.binance import BinanceGateway
from tradeforge.exchange.capital_com import CapitalComGateway
from tradeforge.exchange.coinbase import CoinbaseGateway
from tradeforge.exchange.exceptions import UnsupportedExchangeError
from tradeforge.exchange.kraken import KrakenGateway

GATEWAYS: Dict[str, Type[ExchangeGateway]] = {
    "binance": BinanceGateway,
    "binance_testnet": BinanceGateway,
    "coinbase": CoinbaseGateway,
    "kraken": KrakenGateway,
    "capital_com": CapitalComGateway,
}


def supported_exchanges() -> list[str]:
    return sorted(GATEWAYS)


def create_gateway(
    exchange: str,
    credential: Optional[Credential] = None,
    *,
    settings: Optional[ExchangeConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ExchangeGateway:
    """
    Build a gateway for ``exchange``. A missing credential yields an
    unauthenticated gateway, enough for public klines and funding rates.
    """
    name = (exchange or "").strip().lower()
    cls = GATEWAYS.get(name)
    if cls is None:
        raise UnsupportedExchangeError(f"Unsupported exchange: {exchange}")

    settings = settings or get_config().exchange
    kwargs = dict(settings.base_url_overrides(name))
    kwargs["timeout_seconds"] = settings.timeout_seconds
    kwargs["transport"] = transport
    if name == "binance_testnet":
        kwargs["testnet"] = True
    elif name == "binance":
        kwargs["testnet"] = settings.use_sandbox
    else:
        kwargs["sandbox"] = settings.use_sandbox

    cred = credential or Credential(exchange=name)
    return cls(cred.api_key, cred.api_secret, cred.passphrase, **kwargs)
