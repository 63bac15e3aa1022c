"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ConfigurationError(RuntimeError):
    """Startup configuration is invalid or missing required secrets."""


class ExchangeError(RuntimeError):
    """Exchange call failed. `code` carries the exchange error code when known."""

    def __init__(self, message: str, code: Optional[int] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class RateLimitError(ExchangeError):
    """Exchange rejected the request for exceeding request weight (429/418)."""


class AuthenticationError(ExchangeError):
    """Missing, invalid or unauthorized exchange credentials."""


class ExchangeUnavailable(ExchangeError):
    """Network failure or timeout after all retries were used."""


class DecisionError(CriticalDataUnavailable):
    """A decision could not be produced for a symbol (data or oracle failure)."""

    def __init__(self, symbol: str, stage: str, original: Optional[Exception] = None):
        super().__init__(f"{symbol}:{stage}", original)
        self.symbol = symbol
        self.stage = stage

    def __str__(self) -> str:
        detail = f": {self.original}" if self.original else ""
        return f"decision for {self.symbol} failed at {self.stage}{detail}"


class StaleStateError(RuntimeError):
    """State file changed on disk since it was loaded; the write was refused."""

    def __init__(self, expected_version: int, found_version: int):
        super().__init__(
            f"state version mismatch (loaded {expected_version}, on disk {found_version})"
        )
        self.expected_version = expected_version
        self.found_version = found_version


class StatePersistenceError(RuntimeError):
    """State could not be written after retries."""
