from typing import Optional


class TradingError(Exception):
    """Base class for every failure the trading core reports instead of crashing."""


class TransportError(TradingError):
    """Network failure or timeout talking to the exchange or the AI provider."""


class RateLimited(TradingError):
    """The remote side throttled the request; callers back off before retrying."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ValidationError(TradingError):
    """A local precondition failed; nothing was sent to the exchange."""


class ExchangeRejected(TradingError):
    def __init__(self, code: Optional[str], msg: Optional[str]):
        self.code = None if code is None else str(code)
        self.msg = msg
        super().__init__(f"Exchange rejected request (code={self.code}, msg={msg})")


class ParseError(TradingError):
    """Malformed inbound payload: exchange message, candle row or AI response."""


class ConfigError(TradingError):
    """Unrecoverable configuration problem detected before any task starts."""
