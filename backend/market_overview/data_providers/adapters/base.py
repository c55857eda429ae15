"""
Base Provider Adapter Interface

Defines the canonical market data model, the provider failure taxonomy and
the abstract interface that every upstream adapter implements.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Any
import asyncio
import aiohttp
from loguru import logger


ZERO = Decimal("0")
PERCENT_QUANTUM = Decimal("0.0001")

# NSE and BSE sessions are dated in India Standard Time
IST = timezone(timedelta(hours=5, minutes=30))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Convert a provider number to Decimal, defaulting when absent or invalid."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def to_optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    result = to_decimal(value, default=None)
    return result


def to_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def _float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


class QuoteSource(str, Enum):
    """Where a quote or series came from."""
    UPSTOX = "upstox"
    YAHOO = "yahoo"
    CACHE = "cache"


class DataType(str, Enum):
    """Types of data a provider can supply."""
    QUOTE = "quote"
    HISTORICAL = "historical"
    SEARCH = "search"


class TimeFrame(str, Enum):
    """Supported candle granularities."""
    MINUTE_1 = "1min"
    MINUTE_30 = "30min"
    DAY = "1day"
    WEEK = "1week"
    MONTH = "1month"


class FailureKind(str, Enum):
    """Provider failure classification used by the failover walk."""
    TRANSIENT = "transient"                      # try the next provider
    CREDENTIALS_EXPIRED = "credentials_expired"  # disable provider until refreshed
    SYMBOL_UNSUPPORTED = "symbol_unsupported"    # permanent for this symbol/provider


@dataclass
class ProviderConfig:
    """Configuration for a data provider."""
    name: str
    source: QuoteSource
    api_key: Optional[str] = None
    base_url: str = ""

    max_symbols_per_request: int = 100

    # Timeouts
    timeout_seconds: float = 5.0

    # Feature flags
    supported_data_types: list[DataType] = field(default_factory=list)

    # Priority per data type (lower = tried first)
    priorities: dict[DataType, int] = field(default_factory=dict)

    # Symbol used by health_check()
    health_check_symbol: str = "NIFTY 50"

    def priority_for(self, data_type: DataType) -> int:
        return self.priorities.get(data_type, 100)


@dataclass
class Quote:
    """
    Canonical, provider-agnostic quote.

    change is always price - prev_close: when a provider supplies a previous
    close the change fields are recomputed from it, when it only supplies a
    change the previous close is derived from that.
    """
    symbol: str
    price: Decimal
    source: QuoteSource
    change: Decimal = ZERO
    change_percent: Decimal = ZERO
    volume: int = 0
    day_high: Decimal = ZERO
    day_low: Decimal = ZERO
    day_open: Decimal = ZERO
    prev_close: Decimal = ZERO

    # Fundamentals (not every provider has them)
    market_cap: Optional[Decimal] = None
    pe_ratio: Optional[Decimal] = None
    week52_high: Optional[Decimal] = None
    week52_low: Optional[Decimal] = None

    timestamp: datetime = field(default_factory=utc_now)
    stale: bool = False
    prev_close_estimated: bool = False

    def __post_init__(self) -> None:
        if self.prev_close > 0:
            self.change = self.price - self.prev_close
            self.change_percent = (self.change / self.prev_close * 100).quantize(PERCENT_QUANTUM)
        elif self.change != 0:
            self.prev_close = self.price - self.change
            if self.prev_close > 0:
                self.change_percent = (self.change / self.prev_close * 100).quantize(PERCENT_QUANTUM)
            else:
                self.change_percent = ZERO
        else:
            self.change_percent = ZERO

    @property
    def has_previous_close(self) -> bool:
        return self.prev_close > 0

    def with_previous_close(self, prev_close: Decimal, estimated: bool = False) -> "Quote":
        """Copy of this quote re-based on a previous close."""
        return replace(self, prev_close=prev_close, change=ZERO, prev_close_estimated=estimated)

    def as_cached(self, stale: bool = False) -> "Quote":
        return replace(self, source=QuoteSource.CACHE, stale=stale)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "symbol": self.symbol,
            "price": float(self.price),
            "change": float(self.change),
            "change_percent": float(self.change_percent),
            "volume": self.volume,
            "day_high": float(self.day_high),
            "day_low": float(self.day_low),
            "day_open": float(self.day_open),
            "prev_close": float(self.prev_close),
            "market_cap": _float(self.market_cap),
            "pe_ratio": _float(self.pe_ratio),
            "week52_high": _float(self.week52_high),
            "week52_low": _float(self.week52_low),
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "stale": self.stale,
            "prev_close_estimated": self.prev_close_estimated,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Quote":
        return cls(
            symbol=d["symbol"],
            price=to_decimal(d.get("price")),
            source=QuoteSource(d.get("source", QuoteSource.CACHE.value)),
            change=to_decimal(d.get("change")),
            change_percent=to_decimal(d.get("change_percent")),
            volume=to_int(d.get("volume")),
            day_high=to_decimal(d.get("day_high")),
            day_low=to_decimal(d.get("day_low")),
            day_open=to_decimal(d.get("day_open")),
            prev_close=to_decimal(d.get("prev_close")),
            market_cap=to_optional_decimal(d.get("market_cap")),
            pe_ratio=to_optional_decimal(d.get("pe_ratio")),
            week52_high=to_optional_decimal(d.get("week52_high")),
            week52_low=to_optional_decimal(d.get("week52_low")),
            timestamp=datetime.fromisoformat(d["timestamp"]) if d.get("timestamp") else utc_now(),
            stale=bool(d.get("stale", False)),
            prev_close_estimated=bool(d.get("prev_close_estimated", False)),
        )


@dataclass
class Candle:
    """One OHLCV bar."""
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": self.volume,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Candle":
        return cls(
            timestamp=datetime.fromisoformat(d["timestamp"]),
            open=to_decimal(d.get("open")),
            high=to_decimal(d.get("high")),
            low=to_decimal(d.get("low")),
            close=to_decimal(d.get("close")),
            volume=to_int(d.get("volume")),
        )


@dataclass
class HistoricalSeries:
    """Non-empty, strictly time-ordered candles for one symbol and granularity."""
    symbol: str
    timeframe: TimeFrame
    period: str
    candles: list[Candle]
    source: QuoteSource
    stale: bool = False

    def __post_init__(self) -> None:
        if not self.candles:
            raise ValueError(f"Historical series for {self.symbol} is empty")
        for previous, current in zip(self.candles, self.candles[1:]):
            if current.timestamp <= previous.timestamp:
                raise ValueError(
                    f"Candles for {self.symbol} are not strictly increasing at {current.timestamp.isoformat()}"
                )

    @property
    def first(self) -> Candle:
        return self.candles[0]

    @property
    def last(self) -> Candle:
        return self.candles[-1]

    def summary(self) -> dict[str, Any]:
        """Period move from the first close to the last close, with the period range."""
        start = self.first.close
        change = self.last.close - start
        change_percent = change / start * 100 if start > 0 else ZERO
        return {
            "current_price": float(self.last.close),
            "change": round(float(change), 2),
            "change_percent": round(float(change_percent), 2),
            "period_high": float(max(c.high for c in self.candles)),
            "period_low": float(min(c.low for c in self.candles)),
        }

    def as_cached(self, stale: bool = False) -> "HistoricalSeries":
        return replace(self, source=QuoteSource.CACHE, stale=stale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe.value,
            "period": self.period,
            "candles": [c.to_dict() for c in self.candles],
            "source": self.source.value,
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "HistoricalSeries":
        return cls(
            symbol=d["symbol"],
            timeframe=TimeFrame(d["timeframe"]),
            period=d.get("period", ""),
            candles=[Candle.from_dict(c) for c in d.get("candles", [])],
            source=QuoteSource(d.get("source", QuoteSource.CACHE.value)),
            stale=bool(d.get("stale", False)),
        )


@dataclass(frozen=True)
class HistoricalRange:
    """A resolved request window for historical data."""
    period: str
    timeframe: TimeFrame
    start: datetime
    end: datetime

    @property
    def is_intraday(self) -> bool:
        return self.timeframe in (TimeFrame.MINUTE_1, TimeFrame.MINUTE_30)


@dataclass
class SearchResult:
    """A symbol search hit."""
    symbol: str
    name: str
    exchange: str
    type: str
    currency: str = "INR"

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "exchange": self.exchange,
            "type": self.type,
            "currency": self.currency,
        }


class ProviderError(Exception):
    """Base exception for provider errors. Treated as transient unless a subclass says otherwise."""

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"[{provider}] {message}")


class TransientProviderError(ProviderError):
    """Network error, 5xx, throttling or malformed payload; safe to fall back."""

    def __init__(self, provider: str, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(provider, message)


class CredentialsExpiredError(ProviderError):
    """The provider rejected our credentials (HTTP 401/403)."""

    kind = FailureKind.CREDENTIALS_EXPIRED

    def __init__(self, provider: str, message: str = "Authentication failed - token may be expired"):
        super().__init__(provider, message)


class SymbolUnsupportedError(ProviderError):
    """The provider has no instrument for this symbol."""

    kind = FailureKind.SYMBOL_UNSUPPORTED

    def __init__(self, provider: str, symbol: str, reason: str = "no instrument mapping"):
        self.symbol = symbol
        super().__init__(provider, f"Symbol {symbol} not supported: {reason}")


class BaseAdapter(ABC):
    """
    Abstract base class for all data provider adapters.

    Adapters are pure translation + I/O boundaries: they never read or write
    the cache or the rate tracker. Each adapter must implement:
    - resolve_instrument(): map a canonical symbol to the provider's key
    - get_quote(): quote for one symbol
    - get_batch_quotes(): quotes for many symbols, partial results allowed
    - get_historical(): candles for a resolved range
    """

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.name = config.name
        self.source = config.source
        self._session: Optional[aiohttp.ClientSession] = None
        self.last_success: Optional[datetime] = None

    async def initialize(self) -> None:
        """Create the HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self._default_headers())
            logger.info(f"{self.name} adapter initialized")

    async def close(self) -> None:
        """Clean up resources."""
        if self._session:
            await self._session.close()
            self._session = None
            logger.info(f"{self.name} adapter closed")

    async def health_check(self) -> bool:
        """Check if the provider is reachable with our credentials."""
        try:
            await self.get_quote(self.config.health_check_symbol)
            return True
        except ProviderError as e:
            logger.warning(f"{self.name} health check failed: {e}")
            return False

    @property
    def has_credentials(self) -> bool:
        return bool(self.config.api_key)

    def refresh_credentials(self, token: str) -> None:
        """Swap in a new access token."""
        self.config.api_key = token
        logger.info(f"{self.name} credentials refreshed")

    def supports(self, data_type: DataType) -> bool:
        return data_type in self.config.supported_data_types

    @abstractmethod
    def resolve_instrument(self, symbol: str) -> str:
        """
        Map a canonical symbol to this provider's instrument key.

        Raises:
            SymbolUnsupportedError: If the adapter's mapping policy rejects the symbol
        """
        pass

    @abstractmethod
    async def get_quote(self, symbol: str) -> Quote:
        """
        Get a quote for a single symbol.

        Raises:
            ProviderError: A classified failure
        """
        pass

    @abstractmethod
    async def get_batch_quotes(self, symbols: list[str]) -> list[Quote]:
        """
        Get quotes for many symbols in as few calls as possible.

        Symbols that fail individually are omitted from the result.

        Raises:
            ProviderError: If the batch call as a whole fails
        """
        pass

    @abstractmethod
    async def get_historical(self, symbol: str, range_: HistoricalRange) -> HistoricalSeries:
        """
        Get historical candles.

        Raises:
            ProviderError: A classified failure (empty data is transient)
        """
        pass

    async def get_previous_close(self, symbol: str) -> Decimal:
        """
        Look up the real previous session close from daily candles.

        Raises:
            ProviderError: If the lookup fails or yields nothing usable
        """
        now = utc_now()
        range_ = HistoricalRange(
            period="5d",
            timeframe=TimeFrame.DAY,
            start=now - timedelta(days=10),
            end=now,
        )
        series = await self.get_historical(symbol, range_)
        today = now.astimezone(IST).date()
        previous = [c for c in series.candles if c.timestamp.astimezone(IST).date() < today]
        candle = previous[-1] if previous else (series.candles[-2] if len(series.candles) > 1 else None)
        if candle is None or candle.close <= 0:
            raise TransientProviderError(self.name, f"No previous close available for {symbol}")
        return candle.close

    # Helper methods
    def _default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _auth_headers(self) -> dict[str, str]:
        return {}

    async def _get_json(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        symbol: Optional[str] = None,
        unsupported_statuses: tuple[int, ...] = (404,),
    ) -> Any:
        """
        GET a JSON document and classify failures.

        Args:
            path: Path relative to the configured base URL
            params: Query parameters
            symbol: Symbol the call is about, for SymbolUnsupported classification
            unsupported_statuses: Statuses meaning "no such instrument" when symbol is set
        """
        if self._session is None:
            await self.initialize()

        url = f"{self.config.base_url}{path}"
        try:
            async with self._session.get(url, params=params, headers=self._auth_headers()) as response:
                status = response.status

                if status in (401, 403):
                    raise CredentialsExpiredError(self.name)
                if symbol and status in unsupported_statuses:
                    raise SymbolUnsupportedError(self.name, symbol, f"HTTP {status}")
                if status == 429:
                    retry_after = to_int(response.headers.get("Retry-After"), default=60)
                    raise TransientProviderError(self.name, "Rate limit exceeded", retry_after=retry_after)
                if status != 200:
                    error_text = await response.text()
                    raise TransientProviderError(self.name, f"API error {status}: {error_text[:200]}")

                try:
                    data = await response.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError) as e:
                    raise TransientProviderError(self.name, f"Malformed response: {e}")

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientProviderError(self.name, f"Connection error: {e}")

        self.last_success = utc_now()
        return data

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name})>"
