"""
Market Overview - Test Configuration
Shared fixtures and test configuration.
"""
import asyncio
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
import pytest
from unittest.mock import AsyncMock, MagicMock

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment
os.environ["APP_ENV"] = "testing"
os.environ["REDIS_URL"] = ""
os.environ["UPSTOX_ACCESS_TOKEN"] = ""
os.environ["YAHOO_CRUMB"] = ""

from market_overview.data_providers.adapters.base import (  # noqa: E402
    BaseAdapter,
    ProviderConfig,
    QuoteSource,
    DataType,
    Quote,
    Candle,
    HistoricalSeries,
    HistoricalRange,
    SearchResult,
    TransientProviderError,
)
from market_overview.data_providers.cache_manager import CacheStore, MemoryCacheBackend  # noqa: E402
from market_overview.data_providers.failover import FailoverManager  # noqa: E402
from market_overview.data_providers.health_monitor import ProviderHealthMonitor  # noqa: E402
from market_overview.data_providers.orchestrator import QuoteOrchestrator, OrchestratorConfig  # noqa: E402
from market_overview.data_providers.rate_limiter import RateLimiter, RateLimitConfig  # noqa: E402


# =========================
# Simulated Clock
# =========================

class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =========================
# Instrumented Fake Adapter
# =========================

class FakeAdapter(BaseAdapter):
    """
    In-memory adapter that counts calls.

    prices maps symbol -> last price; every quote carries a previous close
    10 below the price unless include_prev_close is False.
    """

    def __init__(
        self,
        name: str,
        source: QuoteSource,
        priorities: Optional[dict[DataType, int]] = None,
        prices: Optional[dict[str, Decimal]] = None,
        data_types: Optional[list[DataType]] = None,
    ):
        super().__init__(
            ProviderConfig(
                name=name,
                source=source,
                api_key="token",
                supported_data_types=data_types or [DataType.QUOTE, DataType.HISTORICAL],
                priorities=priorities or {},
            )
        )
        self.prices: dict[str, Decimal] = dict(prices or {})
        self.error: Optional[Exception] = None
        self.errors_by_symbol: dict[str, Exception] = {}
        self.delay: float = 0.0
        self.include_prev_close = True
        self.previous_close: Optional[Decimal] = None
        self.previous_close_error: Optional[Exception] = None
        self.search_results: list[SearchResult] = []
        self.calls: list[tuple[str, Any]] = []

    def count(self, method: Optional[str] = None) -> int:
        return len([c for c in self.calls if method is None or c[0] == method])

    async def initialize(self) -> None:
        self.calls.append(("initialize", None))

    async def close(self) -> None:
        self.calls.append(("close", None))

    def resolve_instrument(self, symbol: str) -> str:
        return symbol

    async def _maybe_fail(self, symbol: Optional[str] = None) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if symbol is not None and symbol in self.errors_by_symbol:
            raise self.errors_by_symbol[symbol]

    def _quote(self, symbol: str) -> Quote:
        price = self.prices[symbol]
        return Quote(
            symbol=symbol,
            price=price,
            source=self.source,
            prev_close=price - Decimal("10") if self.include_prev_close else Decimal("0"),
            volume=1000,
        )

    async def get_quote(self, symbol: str) -> Quote:
        self.calls.append(("get_quote", symbol))
        await self._maybe_fail(symbol)
        if symbol not in self.prices:
            raise TransientProviderError(self.name, f"no data for {symbol}")
        return self._quote(symbol)

    async def get_batch_quotes(self, symbols: list[str]) -> list[Quote]:
        self.calls.append(("get_batch_quotes", list(symbols)))
        await self._maybe_fail()
        return [self._quote(s) for s in symbols if s in self.prices and s not in self.errors_by_symbol]

    async def get_historical(self, symbol: str, range_: HistoricalRange) -> HistoricalSeries:
        self.calls.append(("get_historical", symbol))
        await self._maybe_fail(symbol)
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        candles = [
            Candle(
                timestamp=base + timedelta(days=i),
                open=Decimal("100") + i,
                high=Decimal("105") + i,
                low=Decimal("95") + i,
                close=Decimal("102") + i,
                volume=1000 * (i + 1),
            )
            for i in range(3)
        ]
        return HistoricalSeries(
            symbol=symbol,
            timeframe=range_.timeframe,
            period=range_.period,
            candles=candles,
            source=self.source,
        )

    async def get_previous_close(self, symbol: str) -> Decimal:
        self.calls.append(("get_previous_close", symbol))
        if self.previous_close_error is not None:
            raise self.previous_close_error
        if self.previous_close is None:
            raise TransientProviderError(self.name, "no previous close")
        return self.previous_close

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        self.calls.append(("search", query))
        await self._maybe_fail()
        return list(self.search_results)


@pytest.fixture
def upstox_fake() -> FakeAdapter:
    return FakeAdapter(
        "upstox",
        QuoteSource.UPSTOX,
        priorities={DataType.QUOTE: 10, DataType.HISTORICAL: 20},
        prices={
            "RELIANCE": Decimal("2500"),
            "TCS": Decimal("3900"),
            "INFY": Decimal("1500"),
            "NIFTY 50": Decimal("24800"),
            "SENSEX": Decimal("81600"),
            "BANKNIFTY": Decimal("51300"),
            "VIX": Decimal("13.9"),
        },
    )


@pytest.fixture
def yahoo_fake() -> FakeAdapter:
    return FakeAdapter(
        "yahoo",
        QuoteSource.YAHOO,
        priorities={DataType.QUOTE: 20, DataType.HISTORICAL: 10, DataType.SEARCH: 10},
        prices={
            "RELIANCE": Decimal("2501"),
            "TCS": Decimal("3901"),
            "INFY": Decimal("1501"),
            "NIFTY 50": Decimal("24801"),
            "SENSEX": Decimal("81601"),
            "BANKNIFTY": Decimal("51301"),
            "VIX": Decimal("13.8"),
        },
        data_types=[DataType.QUOTE, DataType.HISTORICAL, DataType.SEARCH],
    )


# =========================
# Component Fixtures
# =========================

@pytest.fixture
def rate_limiter(clock) -> RateLimiter:
    return RateLimiter(
        configs={
            "upstox": RateLimitConfig(max_requests=5, window_seconds=60),
            "yahoo": RateLimitConfig(max_requests=5, window_seconds=60),
        },
        clock=clock,
    )


@pytest.fixture
def health_monitor(clock) -> ProviderHealthMonitor:
    return ProviderHealthMonitor(
        credentials_cooldown_seconds=1800,
        unsupported_ttl_seconds=3600,
        clock=clock,
    )


@pytest.fixture
def cache(clock) -> CacheStore:
    return CacheStore(memory=MemoryCacheBackend(clock=clock, rng=random.Random(7)), clock=clock)


@pytest.fixture
def failover(rate_limiter, health_monitor) -> FailoverManager:
    return FailoverManager(rate_limiter, health_monitor, timeout_seconds=1.0)


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    return OrchestratorConfig()


@pytest.fixture
def orchestrator(
    cache, rate_limiter, health_monitor, failover, orchestrator_config, clock, upstox_fake, yahoo_fake
) -> QuoteOrchestrator:
    orch = QuoteOrchestrator(
        cache=cache,
        rate_limiter=rate_limiter,
        health_monitor=health_monitor,
        failover=failover,
        config=orchestrator_config,
        clock=clock,
    )
    orch.register_provider(upstox_fake)
    orch.register_provider(yahoo_fake)
    return orch


# =========================
# aiohttp Mock Helpers
# =========================

def mock_response(
    status: int = 200,
    json_data: Any = None,
    text: str = "",
    headers: Optional[dict] = None,
) -> MagicMock:
    """Build a mocked aiohttp response."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=text)
    return response


def mock_session(*responses: MagicMock) -> MagicMock:
    """Build a mocked aiohttp session returning responses in order."""
    session = MagicMock()
    context = MagicMock()
    context.__aenter__ = AsyncMock(side_effect=list(responses))
    context.__aexit__ = AsyncMock(return_value=False)
    session.get.return_value = context
    session.close = AsyncMock()
    return session
