"""
Provider Adapters Package

Contains adapters for the supported market data providers.
Each adapter implements the BaseAdapter interface for consistent data access.
"""
from market_overview.data_providers.adapters.base import (
    BaseAdapter,
    ProviderConfig,
    QuoteSource,
    DataType,
    TimeFrame,
    FailureKind,
    Quote,
    Candle,
    HistoricalSeries,
    HistoricalRange,
    SearchResult,
    ProviderError,
    TransientProviderError,
    CredentialsExpiredError,
    SymbolUnsupportedError,
)
from market_overview.data_providers.adapters.upstox import (
    UpstoxAdapter,
    create_upstox_config,
)
from market_overview.data_providers.adapters.yahoo import (
    YahooFinanceAdapter,
    create_yahoo_config,
)

__all__ = [
    # Base
    "BaseAdapter",
    "ProviderConfig",
    "QuoteSource",
    "DataType",
    "TimeFrame",
    "FailureKind",
    "Quote",
    "Candle",
    "HistoricalSeries",
    "HistoricalRange",
    "SearchResult",
    # Errors
    "ProviderError",
    "TransientProviderError",
    "CredentialsExpiredError",
    "SymbolUnsupportedError",
    # Providers
    "UpstoxAdapter",
    "create_upstox_config",
    "YahooFinanceAdapter",
    "create_yahoo_config",
]
