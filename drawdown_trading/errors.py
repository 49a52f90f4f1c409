# drawdown_trading/errors.py
"""
Exception taxonomy for the trading engine.

Per-source and per-order errors are caught by the component that owns them;
price errors abort the cycle's price step and are reported, never re-raised to
the scheduler.
"""

from typing import Any, Dict, Optional


class TradingError(Exception):
    """Base class for all trading engine errors."""
    pass


class ConfigError(TradingError):
    pass


# =============================================================================
# PRICE COLLECTION
# =============================================================================

class SourceFetchError(TradingError):
    """A single price source failed. Recovered and counted per source."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class SourceParseError(SourceFetchError):
    """A price source answered with an unusable payload."""
    pass


class PriceDataError(TradingError):
    """Fatal to the cycle's price step."""
    pass


class InsufficientSources(PriceDataError):
    def __init__(self, successful: int, total: int, required: int = 2):
        super().__init__(f"Insufficient sources: {successful}/{total} (need {required})")
        self.successful = successful
        self.total = total
        self.required = required


class PriceOutOfBounds(PriceDataError):
    def __init__(self, price: float, low: float, high: float):
        super().__init__(f"Abnormal price: {price:.2f} outside [{low:.0f}, {high:.0f}]")
        self.price = price
        self.low = low
        self.high = high


class DataUnavailable(PriceDataError):
    """Every source and the fallback failed."""
    pass


# =============================================================================
# DECISIONS AND ORDERS
# =============================================================================

class DuplicateGuardTripped(TradingError):
    """Buy skipped because the tier was already bought. A business decision, not a fault."""

    def __init__(self, tier_name: str, reason: str):
        super().__init__(f"Duplicate buy blocked for tier '{tier_name}': {reason}")
        self.tier_name = tier_name
        self.reason = reason


class OrderError(TradingError):
    """Fatal to a single order only."""

    def __init__(self, message: str, quote_id: Optional[str] = None):
        super().__init__(message)
        self.quote_id = quote_id


class QuoteCreationFailed(OrderError):
    pass


class QuoteTerminalFailure(OrderError):
    def __init__(self, quote_id: str, state: str):
        super().__init__(f"Quote {quote_id} ended in state {state}", quote_id=quote_id)
        self.state = state


class QuoteTimeout(OrderError):
    def __init__(self, quote_id: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.0f}s waiting for quote {quote_id}", quote_id=quote_id)
        self.timeout = timeout


class TradingDisabled(OrderError):
    pass


# =============================================================================
# LEDGER AND EXCHANGE
# =============================================================================

class LedgerError(TradingError):
    pass


class LedgerQueryError(LedgerError):
    pass


class LedgerWriteError(LedgerError):
    """A fill happened at the exchange but could not be recorded locally."""

    def __init__(self, message: str, fill: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.fill = fill or {}


class ReceiptCreationFailed(TradingError):
    """Best-effort receipt (invoice) could not be created. Never fails an order."""
    pass


class StrikeAPIError(TradingError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
