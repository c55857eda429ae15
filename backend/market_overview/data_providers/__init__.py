"""
Data Providers Package

Market data resilience layer: provider adapters plus the cache, rate
budget, health and failover infrastructure the orchestrator wires together.
"""
from market_overview.data_providers.adapters import (
    UpstoxAdapter,
    YahooFinanceAdapter,
    create_upstox_config,
    create_yahoo_config,
)
from market_overview.data_providers.rate_limiter import RateLimiter, RateLimitConfig, RateWindow
from market_overview.data_providers.health_monitor import ProviderHealthMonitor, HealthMetrics
from market_overview.data_providers.failover import (
    FailoverManager,
    FailoverOutcome,
    ProviderAttempt,
    AttemptStatus,
)
from market_overview.data_providers.data_normalizer import (
    DataNormalizer,
    canonicalize_symbol,
    resolve_period,
)
from market_overview.data_providers.cache_manager import CacheStore, MemoryCacheBackend
from market_overview.data_providers.maintenance import MaintenanceTask
from market_overview.data_providers.orchestrator import (
    QuoteOrchestrator,
    OrchestratorConfig,
    QuoteResult,
    BatchQuoteResult,
    HistoricalResult,
    IndexSnapshot,
)
from market_overview.data_providers.provider_init import (
    create_orchestrator,
    initialize_market_data,
    shutdown_market_data,
)

__all__ = [
    # Adapters
    "UpstoxAdapter",
    "YahooFinanceAdapter",
    "create_upstox_config",
    "create_yahoo_config",
    # Rate Limiter
    "RateLimiter",
    "RateLimitConfig",
    "RateWindow",
    # Health Monitor
    "ProviderHealthMonitor",
    "HealthMetrics",
    # Failover
    "FailoverManager",
    "FailoverOutcome",
    "ProviderAttempt",
    "AttemptStatus",
    # Data Normalizer
    "DataNormalizer",
    "canonicalize_symbol",
    "resolve_period",
    # Cache
    "CacheStore",
    "MemoryCacheBackend",
    "MaintenanceTask",
    # Orchestrator
    "QuoteOrchestrator",
    "OrchestratorConfig",
    "QuoteResult",
    "BatchQuoteResult",
    "HistoricalResult",
    "IndexSnapshot",
    "create_orchestrator",
    "initialize_market_data",
    "shutdown_market_data",
]
