"""
Market Overview - Custom Exceptions
Caller-facing errors raised by the quote orchestrator.

Provider-level failures live in data_providers.adapters.base and are
translated into these before they reach a caller.
"""
import math
from typing import Optional, Any, Dict


class MarketOverviewException(Exception):
    """Base exception for the market overview service."""

    # Suggested status for the HTTP-facing layer
    http_status: int = 500

    def __init__(
        self,
        message: str = "An error occurred",
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


# =========================
# Market Data Exceptions
# =========================

class MarketDataError(MarketOverviewException):
    """Market data related errors."""
    pass


class RateLimitedError(MarketDataError):
    """Every eligible provider is out of budget for this caller."""

    http_status = 429

    def __init__(self, retry_after_seconds: float = 0.0, message: str = "Rate limit exceeded"):
        self.retry_after_seconds = max(0, math.ceil(retry_after_seconds))
        super().__init__(
            message=message,
            code="RATE_LIMITED",
            details={"retry_after": self.retry_after_seconds},
        )


class ServiceUnavailableError(MarketDataError):
    """All providers exhausted and no usable cache entry."""

    http_status = 503

    def __init__(self, message: str = "Market data services temporarily unavailable"):
        super().__init__(message=message, code="SERVICE_UNAVAILABLE")


class InvalidPeriodError(MarketDataError):
    """Unknown historical period."""

    http_status = 400

    def __init__(self, period: str = ""):
        super().__init__(
            message=f"Unsupported period '{period}'",
            code="INVALID_PERIOD",
            details={"period": period},
        )


class InvalidSymbolError(MarketDataError):
    """Empty or malformed symbol."""

    http_status = 400

    def __init__(self, symbol: str = ""):
        super().__init__(
            message=f"Invalid symbol '{symbol}'",
            code="INVALID_SYMBOL",
            details={"symbol": symbol},
        )


class UnknownProviderError(MarketDataError):
    """Provider name is not registered."""

    http_status = 404

    def __init__(self, provider: str = ""):
        super().__init__(
            message=f"Unknown provider '{provider}'",
            code="UNKNOWN_PROVIDER",
            details={"provider": provider},
        )
