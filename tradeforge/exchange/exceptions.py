"""Typed exception hierarchy for exchange and configuration failures.

Lets the controller and scheduler tell transient infrastructure trouble
apart from permanent rejections and from bad bot configuration.
"""


class ExchangeError(Exception):
    """Base class for all exchange-related errors."""


class TransientExchangeError(ExchangeError):
    """Temporary failure that may succeed on the next tick (network, 5xx)."""


class ExchangeTimeoutError(TransientExchangeError):
    """An exchange HTTP call exceeded its bounded timeout."""


class RateLimitError(TransientExchangeError):
    """Exchange rate limit hit (429). The next tick is the retry."""
    def __init__(self, message: str = "Rate limit exceeded", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentExchangeError(ExchangeError):
    """Non-recoverable failure (invalid pair, auth, insufficient balance)."""


class AuthenticationError(PermanentExchangeError):
    """API key/secret/session authentication failure."""


class InsufficientFundsError(PermanentExchangeError):
    """Insufficient balance for the requested order."""


class InvalidOrderError(PermanentExchangeError):
    """Invalid order parameters (bad symbol, missing limit price, size below minimum)."""


# ---------------------------------------------------------------------------
# Configuration errors: raised before any network call
# ---------------------------------------------------------------------------

class ConfigurationError(ValueError):
    """Bot or engine configuration cannot be used as given."""


class UnsupportedExchangeError(ConfigurationError):
    """No gateway implementation exists for the requested exchange name."""


class InvalidStrategyParamsError(ConfigurationError):
    """Strategy parameters are missing or malformed."""
