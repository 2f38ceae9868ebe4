# errors.py
"""Error taxonomy for the monitor service.

Only the web layer translates these into HTTP status codes; nothing in the
core lets them escape to the event loop.
"""

from typing import Any, Optional


class MonitorError(Exception):
    """Base class for every error raised by the monitor core."""


class SeedingError(MonitorError):
    """Historical fetch or indicator initialisation failed. Fatal to creation."""


class FeedError(MonitorError):
    """Kline stream gave up after exhausting its reconnect budget."""


class ExecutionError(MonitorError):
    """An order or balance call failed; the crossing does not flip position."""


class InsufficientBalanceError(ExecutionError):
    pass


class ExchangeError(ExecutionError):
    """Binance answered with an HTTP error or an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ConflictError(MonitorError):
    """A monitor is already registered (or being seeded) for the symbol."""


class SymbolNotFoundError(MonitorError):
    pass
