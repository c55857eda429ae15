"""
Quote Orchestrator

Central coordinator for market data requests.
Cache -> rate budget -> provider walk -> cache write -> result.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Any, Callable, Awaitable
from loguru import logger

from market_overview.data_providers.adapters.base import (
    BaseAdapter,
    Quote,
    HistoricalSeries,
    SearchResult,
    DataType,
    QuoteSource,
    ProviderError,
    CredentialsExpiredError,
)
from market_overview.data_providers.cache_manager import CacheStore
from market_overview.data_providers.data_normalizer import (
    canonicalize_symbol,
    estimate_previous_close,
    resolve_period,
)
from market_overview.data_providers.failover import FailoverManager, FailoverOutcome
from market_overview.data_providers.health_monitor import ProviderHealthMonitor
from market_overview.data_providers.maintenance import MaintenanceTask
from market_overview.data_providers.rate_limiter import RateLimiter, RateLimitConfig
from market_overview.utils.exceptions import (
    InvalidSymbolError,
    RateLimitedError,
    ServiceUnavailableError,
    UnknownProviderError,
)


ANONYMOUS_CALLER = "anonymous"
OVERVIEW_CACHE_KEY = "market:overview"
STALE_PREFIX = "stale:"

# (canonical symbol, display name)
OVERVIEW_INDICES: list[tuple[str, str]] = [
    ("NIFTY 50", "NIFTY 50"),
    ("SENSEX", "BSE SENSEX"),
    ("BANKNIFTY", "NIFTY BANK"),
    ("VIX", "INDIA VIX"),
]


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""
    # Cache TTLs (seconds)
    quote_ttl: int = 30
    historical_ttl: int = 3600
    search_ttl: int = 300
    overview_ttl: int = 30
    stale_ttl: int = 86400

    # Provider order per request kind
    quote_priority: list[str] = field(default_factory=lambda: ["upstox", "yahoo"])
    historical_priority: list[str] = field(default_factory=lambda: ["yahoo", "upstox"])

    # Degradation
    serve_stale_on_failure: bool = True
    deduplicate_inflight: bool = True
    max_batch_symbols: int = 50

    maintenance_interval_seconds: float = 5 * 60

    @classmethod
    def from_settings(cls, settings) -> "OrchestratorConfig":
        return cls(
            quote_ttl=settings.QUOTE_CACHE_TTL,
            historical_ttl=settings.HISTORICAL_CACHE_TTL,
            search_ttl=settings.SEARCH_CACHE_TTL,
            overview_ttl=settings.OVERVIEW_CACHE_TTL,
            stale_ttl=settings.STALE_CACHE_TTL,
            serve_stale_on_failure=settings.SERVE_STALE_ON_FAILURE,
            deduplicate_inflight=settings.DEDUPLICATE_INFLIGHT,
            max_batch_symbols=settings.MAX_BATCH_SYMBOLS,
            maintenance_interval_seconds=settings.MAINTENANCE_INTERVAL_SECONDS,
        )


@dataclass
class QuoteResult:
    quote: Quote
    cached: bool
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.quote.to_dict(), "cached": self.cached, "stale": self.stale}


@dataclass
class BatchQuoteResult:
    quotes: list[Quote]
    cached_count: int
    fresh_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [q.to_dict() for q in self.quotes],
            "cached_count": self.cached_count,
            "fresh_count": self.fresh_count,
        }


@dataclass
class HistoricalResult:
    series: HistoricalSeries
    cached: bool
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.series.to_dict(),
            "summary": self.series.summary(),
            "cached": self.cached,
            "stale": self.stale,
        }


@dataclass
class IndexSnapshot:
    """Headline index figures for the market overview strip."""
    symbol: str
    name: str
    value: Decimal
    change: Decimal
    change_percent: Decimal
    source: QuoteSource
    prev_close_estimated: bool = False

    @classmethod
    def from_quote(cls, name: str, quote: Quote) -> "IndexSnapshot":
        return cls(
            symbol=quote.symbol,
            name=name,
            value=quote.price,
            change=quote.change,
            change_percent=quote.change_percent,
            source=quote.source,
            prev_close_estimated=quote.prev_close_estimated,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "value": float(self.value),
            "change": float(self.change),
            "change_percent": float(self.change_percent),
            "source": self.source.value,
            "prev_close_estimated": self.prev_close_estimated,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "IndexSnapshot":
        return cls(
            symbol=d["symbol"],
            name=d["name"],
            value=Decimal(str(d["value"])),
            change=Decimal(str(d["change"])),
            change_percent=Decimal(str(d["change_percent"])),
            source=QuoteSource(d.get("source", QuoteSource.CACHE.value)),
            prev_close_estimated=bool(d.get("prev_close_estimated", False)),
        )


class QuoteOrchestrator:
    """
    Central orchestrator for market data operations.

    This is the main interface for fetching market data. It coordinates:
    - Cache reads and writes (the only writer)
    - Per-caller rate budgets
    - Provider failover and failure classification
    - Stale fallback and in-flight de-duplication

    Usage:
        orchestrator = create_orchestrator(settings)
        await orchestrator.initialize()

        result = await orchestrator.get_quote("RELIANCE", caller_id="user-1")
        history = await orchestrator.get_historical("NIFTY 50", "1mo", caller_id="user-1")
    """

    def __init__(
        self,
        cache: CacheStore,
        rate_limiter: RateLimiter,
        health_monitor: ProviderHealthMonitor,
        failover: FailoverManager,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.health_monitor = health_monitor
        self.failover = failover
        self.config = config or OrchestratorConfig()
        self._clock = clock
        self._inflight: dict[str, tuple[asyncio.Future, str]] = {}
        self._initialized = False
        self.maintenance = MaintenanceTask(
            cache,
            rate_limiter,
            health_monitor,
            interval_seconds=self.config.maintenance_interval_seconds,
        )

    def register_provider(
        self,
        adapter: BaseAdapter,
        rate_config: Optional[RateLimitConfig] = None,
    ) -> None:
        """
        Register a data provider with the orchestrator.

        Args:
            adapter: The provider adapter instance
            rate_config: Rate limiting configuration (keeps the limiter's default when omitted)
        """
        self.failover.register_provider(adapter)
        if rate_config:
            self.rate_limiter.configure(adapter.name, rate_config)

    async def initialize(self) -> None:
        """Initialize the cache and all registered providers."""
        if self._initialized:
            return

        await self.cache.initialize()

        for name, provider in self.failover.providers.items():
            try:
                await provider.initialize()
            except Exception as e:
                logger.error(f"Failed to initialize provider {name}: {e}")

        self._initialized = True
        logger.info(f"Quote orchestrator initialized (cache: {self.cache.backend})")

    async def shutdown(self) -> None:
        """Stop maintenance, close providers and the cache."""
        self.stop_maintenance()

        for name, provider in self.failover.providers.items():
            try:
                await provider.close()
            except Exception as e:
                logger.error(f"Error closing provider {name}: {e}")

        await self.cache.close()
        self._initialized = False
        logger.info("Quote orchestrator shut down")

    def start_maintenance(self) -> None:
        self.maintenance.start()

    def stop_maintenance(self) -> None:
        self.maintenance.stop()

    # ==================== Quote Operations ====================

    async def get_quote(self, symbol: str, caller_id: str = ANONYMOUS_CALLER) -> QuoteResult:
        """
        Get a quote for one symbol.

        Raises:
            InvalidSymbolError: Empty symbol
            RateLimitedError: Every eligible provider is out of budget for the caller
            ServiceUnavailableError: All providers failed and no stale copy exists
        """
        symbol = self._canonical(symbol)
        key = f"quote:{symbol}"

        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for quote: {symbol}")
            return QuoteResult(quote=Quote.from_dict(cached).as_cached(), cached=True)

        return await self._singleflight(key, caller_id, lambda: self._fetch_quote(symbol, key, caller_id))

    async def _fetch_quote(self, symbol: str, key: str, caller_id: str) -> QuoteResult:
        outcome = await self.failover.execute_with_failover(
            lambda adapter: adapter.get_quote(symbol),
            DataType.QUOTE,
            caller_id,
            symbol=symbol,
            order=self.config.quote_priority,
            operation_name=f"get_quote({symbol})",
        )

        if outcome.succeeded:
            quote = await self._resolve_previous_close(outcome.provider, outcome.value, caller_id)
            await self._store(key, quote.to_dict(), self.config.quote_ttl)
            return QuoteResult(quote=quote, cached=False)

        stale = await self._exhausted(outcome, key, f"quote {symbol}")
        return QuoteResult(quote=Quote.from_dict(stale).as_cached(stale=True), cached=True, stale=True)

    async def get_batch_quotes(
        self,
        symbols: list[str],
        caller_id: str = ANONYMOUS_CALLER,
    ) -> BatchQuoteResult:
        """
        Get quotes for many symbols.

        Cached symbols are served from the cache; the rest go to one batched
        call per provider in priority order. Provider failures and missing
        budget degrade to whatever was cached; this never raises for them.
        """
        requested = list(dict.fromkeys(
            canonicalize_symbol(s) for s in symbols if s is not None and str(s).strip()
        ))
        if len(requested) > self.config.max_batch_symbols:
            logger.warning(
                f"Batch of {len(requested)} symbols truncated to {self.config.max_batch_symbols}"
            )
            requested = requested[:self.config.max_batch_symbols]

        quotes: dict[str, Quote] = {}
        missing: list[str] = []
        for symbol in requested:
            cached = await self.cache.get(f"quote:{symbol}")
            if cached is not None:
                quotes[symbol] = Quote.from_dict(cached).as_cached()
            else:
                missing.append(symbol)

        cached_count = len(quotes)
        fresh: list[Quote] = []
        tried: set[str] = set()

        while missing:
            order = [name for name in self.config.quote_priority if name not in tried]
            if not order:
                break

            outcome = await self.failover.execute_with_failover(
                lambda adapter, batch=list(missing): adapter.get_batch_quotes(batch),
                DataType.QUOTE,
                caller_id,
                order=order,
                operation_name=f"get_batch_quotes({len(missing)} symbols)",
            )
            tried.update(attempt.provider for attempt in outcome.attempts)
            if not outcome.succeeded:
                break

            wanted = set(missing)
            received = {q.symbol: q for q in outcome.value if q.symbol in wanted}
            resolved = await asyncio.gather(*(
                self._resolve_previous_close(outcome.provider, q, caller_id) for q in received.values()
            ))
            for quote in resolved:
                quotes[quote.symbol] = quote
                fresh.append(quote)
                await self._store(f"quote:{quote.symbol}", quote.to_dict(), self.config.quote_ttl)

            missing = [s for s in missing if s not in quotes]

        if missing:
            logger.info(f"Batch served without {len(missing)} symbols: {missing}")

        return BatchQuoteResult(
            quotes=[quotes[s] for s in requested if s in quotes],
            cached_count=cached_count,
            fresh_count=len(fresh),
        )

    # ==================== Historical Data Operations ====================

    async def get_historical(
        self,
        symbol: str,
        period: str = "1mo",
        caller_id: str = ANONYMOUS_CALLER,
    ) -> HistoricalResult:
        """
        Get candles for a period (1d, 5d, 1mo, 3mo, 6mo, 1y, 2y, 5y, 10y).

        Raises:
            InvalidPeriodError: Unknown period
            RateLimitedError: Every eligible provider is out of budget for the caller
            ServiceUnavailableError: All providers failed and no stale copy exists
        """
        symbol = self._canonical(symbol)
        range_ = resolve_period(period, now=datetime.fromtimestamp(self._clock(), tz=timezone.utc))
        key = f"historical:{symbol}:{range_.period}:{range_.timeframe.value}"

        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for historical: {symbol} {range_.period}")
            return HistoricalResult(series=HistoricalSeries.from_dict(cached).as_cached(), cached=True)

        async def fetch() -> HistoricalResult:
            outcome = await self.failover.execute_with_failover(
                lambda adapter: adapter.get_historical(symbol, range_),
                DataType.HISTORICAL,
                caller_id,
                symbol=symbol,
                order=self.config.historical_priority,
                operation_name=f"get_historical({symbol}, {range_.period})",
            )
            if outcome.succeeded:
                series: HistoricalSeries = outcome.value
                await self._store(key, series.to_dict(), self.config.historical_ttl)
                return HistoricalResult(series=series, cached=False)

            stale = await self._exhausted(outcome, key, f"historical {symbol} {range_.period}")
            return HistoricalResult(
                series=HistoricalSeries.from_dict(stale).as_cached(stale=True),
                cached=True,
                stale=True,
            )

        return await self._singleflight(key, caller_id, fetch)

    # ==================== Market Overview & Search ====================

    async def get_market_overview(self, caller_id: str = ANONYMOUS_CALLER) -> list[IndexSnapshot]:
        """Headline indices; returns whatever could be served."""
        cached = await self.cache.get(OVERVIEW_CACHE_KEY)
        if cached is not None:
            return [IndexSnapshot.from_dict(d) for d in cached]

        batch = await self.get_batch_quotes([symbol for symbol, _ in OVERVIEW_INDICES], caller_id)
        by_symbol = {q.symbol: q for q in batch.quotes}

        snapshots = [
            IndexSnapshot.from_quote(name, by_symbol[symbol])
            for symbol, name in OVERVIEW_INDICES
            if symbol in by_symbol
        ]

        if len(snapshots) == len(OVERVIEW_INDICES):
            await self.cache.set(
                OVERVIEW_CACHE_KEY,
                [s.to_dict() for s in snapshots],
                self.config.overview_ttl,
            )
        else:
            logger.warning(f"Market overview incomplete: {len(snapshots)}/{len(OVERVIEW_INDICES)} indices")

        return snapshots

    async def search_symbols(
        self,
        query: str,
        caller_id: str = ANONYMOUS_CALLER,
        limit: int = 10,
    ) -> list[SearchResult]:
        """
        Search NSE/BSE symbols.

        Provider failures return an empty list.

        Raises:
            RateLimitedError: The caller is out of budget for every search provider
        """
        query = str(query or "").strip()
        if not query:
            return []

        key = f"search:{query.lower()}"
        cached = await self.cache.get(key)
        if cached is not None:
            return [SearchResult(**d) for d in cached]

        outcome = await self.failover.execute_with_failover(
            lambda adapter: adapter.search(query, limit),
            DataType.SEARCH,
            caller_id,
            operation_name=f"search({query})",
        )

        if outcome.succeeded:
            results: list[SearchResult] = outcome.value
            await self.cache.set(key, [r.to_dict() for r in results], self.config.search_ttl)
            return results

        if outcome.budget_exhausted:
            raise RateLimitedError(self._retry_after(outcome))

        return []

    # ==================== Credentials & Status ====================

    def refresh_credentials(self, provider: str, token: str) -> None:
        """
        Swap a provider's access token and re-enable it.

        Raises:
            UnknownProviderError: Provider is not registered
        """
        adapter = self.failover.get_provider(provider)
        if adapter is None:
            raise UnknownProviderError(provider)

        adapter.refresh_credentials(token.strip())
        self.health_monitor.clear_credentials(provider)

    def get_token_status(self) -> dict[str, dict[str, Any]]:
        """Per-provider credential validity."""
        status = {}
        for name, adapter in self.failover.providers.items():
            disabled = self.health_monitor.is_disabled(name)
            health = self.health_monitor.get_health(name)

            if not adapter.has_credentials:
                message = "No access token configured"
            elif disabled:
                message = "Token expired or invalid - refresh required"
            else:
                message = "Token valid"

            status[name] = {
                "valid": adapter.has_credentials and not disabled,
                "has_token": adapter.has_credentials,
                "disabled_until": health.get("disabled_until"),
                "last_success": adapter.last_success.isoformat() if adapter.last_success else None,
                "message": message,
            }
        return status

    def get_rate_limit_status(self, caller_id: str) -> dict[str, dict[str, Any]]:
        return {
            name: self.rate_limiter.get_status(caller_id, name)
            for name in self.failover.providers
        }

    async def stats(self) -> dict[str, Any]:
        """Cache, rate limiter and provider statistics."""
        cache_stats = await self.cache.stats()
        rate_stats = self.rate_limiter.get_stats()
        return {
            "cache_backend": cache_stats["backend"],
            "cache_size": cache_stats["size"],
            "rate_limit_active_keys": rate_stats["total_keys"],
            "cache": cache_stats,
            "rate_limits": rate_stats,
            "providers": self.failover.get_status(),
            "inflight_requests": len(self._inflight),
            "maintenance_running": self.maintenance.is_running,
        }

    # ==================== Helper Methods ====================

    def _canonical(self, symbol: str) -> str:
        canonical = canonicalize_symbol(symbol or "")
        if not canonical:
            raise InvalidSymbolError(symbol or "")
        return canonical

    async def _store(self, key: str, payload: Any, ttl: int) -> None:
        """Write the fresh entry and its long-lived stale copy."""
        await self.cache.set(key, payload, ttl)
        await self.cache.set(f"{STALE_PREFIX}{key}", payload, self.config.stale_ttl)

    def _retry_after(self, outcome: FailoverOutcome) -> float:
        reset = outcome.soonest_reset
        if reset is None:
            return 0.0
        return max(0.0, reset - self._clock())

    async def _exhausted(self, outcome: FailoverOutcome, key: str, label: str) -> Any:
        """
        Decide what a failed walk turns into.

        Returns:
            The stale payload to serve

        Raises:
            RateLimitedError: Walk failed only for lack of budget
            ServiceUnavailableError: Nothing usable
        """
        if outcome.budget_exhausted:
            retry_after = self._retry_after(outcome)
            logger.warning(f"Rate limited for {label}; retry after {retry_after:.0f}s")
            raise RateLimitedError(retry_after)

        if self.config.serve_stale_on_failure:
            stale = await self.cache.get(f"{STALE_PREFIX}{key}")
            if stale is not None:
                logger.warning(f"Serving stale {label} ({outcome.summary()})")
                return stale

        logger.error(f"No provider could serve {label} ({outcome.summary()})")
        raise ServiceUnavailableError()

    async def _resolve_previous_close(self, provider: str, quote: Quote, caller_id: str) -> Quote:
        """
        Fill in a missing previous close.

        The same provider's daily candles are asked first; the estimate
        table is only used when that lookup fails.
        """
        if quote.has_previous_close:
            return quote

        adapter = self.failover.get_provider(provider)
        if adapter is not None and self.rate_limiter.acquire(caller_id, provider):
            try:
                prev_close = await asyncio.wait_for(
                    adapter.get_previous_close(quote.symbol),
                    timeout=self.failover.timeout_seconds,
                )
                if prev_close > 0:
                    return quote.with_previous_close(prev_close)
            except CredentialsExpiredError as e:
                self.health_monitor.mark_credentials_expired(provider, e.message)
                self.health_monitor.record_failure(provider, str(e))
            except (ProviderError, asyncio.TimeoutError) as e:
                logger.warning(f"Previous close lookup for {quote.symbol} via {provider} failed: {e}")
            except Exception:
                logger.exception(f"Unexpected error from {provider} during previous close lookup for {quote.symbol}")

        estimate = estimate_previous_close(quote.symbol)
        if estimate is not None:
            logger.warning(f"Using estimated previous close {estimate} for {quote.symbol}")
            return quote.with_previous_close(estimate, estimated=True)

        logger.warning(f"No previous close for {quote.symbol}; change left at zero")
        return quote

    async def _singleflight(
        self,
        key: str,
        caller_id: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Share one in-flight fetch per cache key.

        The fetch runs as its own task so a cancelled caller does not cancel
        it. A joiner whose leader was rate limited retries on its own budget.
        """
        if not self.config.deduplicate_inflight:
            return await factory()

        entry = self._inflight.get(key)
        if entry is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = (task, caller_id)
            task.add_done_callback(lambda t, k=key: self._finish_inflight(k, t))
            return await asyncio.shield(task)

        task, leader = entry
        logger.debug(f"Joining in-flight fetch for {key}")
        try:
            return await asyncio.shield(task)
        except RateLimitedError:
            if leader == caller_id:
                raise
            return await factory()

    def _finish_inflight(self, key: str, task: asyncio.Future) -> None:
        entry = self._inflight.get(key)
        if entry is not None and entry[0] is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"In-flight fetch for {key} failed: {task.exception()!r}")
