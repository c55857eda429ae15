"""
Provider Initialization Module

Builds one fully wired QuoteOrchestrator from Settings and registers the
Upstox and Yahoo Finance adapters with it.
"""
import time
from typing import Optional, Callable
from loguru import logger

from market_overview.config import Settings, settings as default_settings
from market_overview.data_providers.adapters.upstox import UpstoxAdapter, create_upstox_config
from market_overview.data_providers.adapters.yahoo import YahooFinanceAdapter, create_yahoo_config
from market_overview.data_providers.cache_manager import CacheStore
from market_overview.data_providers.failover import FailoverManager
from market_overview.data_providers.health_monitor import ProviderHealthMonitor
from market_overview.data_providers.orchestrator import QuoteOrchestrator, OrchestratorConfig
from market_overview.data_providers.rate_limiter import RateLimiter
from market_overview.utils.logger import configure_logging


def create_orchestrator(
    settings: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
) -> QuoteOrchestrator:
    """
    Wire cache, rate limiter, health monitor, failover and adapters.

    Nothing is connected yet; call initialize() on the result.
    """
    settings = settings or default_settings
    rate_configs = settings.rate_limit_configs

    cache = CacheStore(redis_url=settings.REDIS_URL, clock=clock)
    rate_limiter = RateLimiter(configs=rate_configs, clock=clock)
    health_monitor = ProviderHealthMonitor(
        credentials_cooldown_seconds=settings.CREDENTIALS_COOLDOWN_SECONDS,
        unsupported_ttl_seconds=settings.SYMBOL_UNSUPPORTED_TTL_SECONDS,
        clock=clock,
    )
    failover = FailoverManager(
        rate_limiter,
        health_monitor,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
    )

    orchestrator = QuoteOrchestrator(
        cache=cache,
        rate_limiter=rate_limiter,
        health_monitor=health_monitor,
        failover=failover,
        config=OrchestratorConfig.from_settings(settings),
        clock=clock,
    )

    upstox = UpstoxAdapter(
        create_upstox_config(
            settings.UPSTOX_ACCESS_TOKEN,
            base_url=settings.UPSTOX_BASE_URL,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    )
    yahoo = YahooFinanceAdapter(
        create_yahoo_config(
            crumb=settings.YAHOO_CRUMB,
            base_url=settings.YAHOO_BASE_URL,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    )

    orchestrator.register_provider(upstox, rate_config=rate_configs["upstox"])
    orchestrator.register_provider(yahoo, rate_config=rate_configs["yahoo"])

    if not upstox.has_credentials:
        logger.warning("UPSTOX_ACCESS_TOKEN not set; quotes will come from Yahoo Finance")

    return orchestrator


async def initialize_market_data(
    settings: Optional[Settings] = None,
    start_maintenance: bool = True,
) -> QuoteOrchestrator:
    """Configure logging, build the orchestrator, connect it and start maintenance."""
    settings = settings or default_settings
    configure_logging(settings)

    orchestrator = create_orchestrator(settings)
    await orchestrator.initialize()

    if start_maintenance:
        orchestrator.start_maintenance()

    logger.info(f"{settings.APP_NAME} market data layer ready ({settings.APP_ENV})")
    return orchestrator


async def shutdown_market_data(orchestrator: QuoteOrchestrator) -> None:
    """Shutdown all providers gracefully."""
    try:
        await orchestrator.shutdown()
        logger.info("Market data layer shut down")
    except Exception as e:
        logger.error(f"Error shutting down market data layer: {e}")
