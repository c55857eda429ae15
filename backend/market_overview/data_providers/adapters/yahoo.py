"""
Yahoo Finance Adapter

Uses the public Yahoo Finance JSON endpoints for Indian listings.
No API key required; an optional crumb can be configured for the
quote endpoint.
"""
from decimal import Decimal
from typing import Optional, Any
from loguru import logger

from market_overview.data_providers.adapters.base import (
    BaseAdapter,
    ProviderConfig,
    QuoteSource,
    DataType,
    TimeFrame,
    Quote,
    Candle,
    HistoricalSeries,
    HistoricalRange,
    SearchResult,
    ProviderError,
    CredentialsExpiredError,
    SymbolUnsupportedError,
    TransientProviderError,
    to_decimal,
    to_int,
)
from market_overview.data_providers.data_normalizer import DataNormalizer, canonicalize_symbol


YAHOO_BASE_URL = "https://query1.finance.yahoo.com"

# Canonical index symbol -> Yahoo ticker
INDEX_MAP: dict[str, str] = {
    "NIFTY 50": "^NSEI",
    "NIFTY": "^NSEI",
    "BANKNIFTY": "^NSEBANK",
    "NIFTY BANK": "^NSEBANK",
    "SENSEX": "^BSESN",
    "VIX": "^INDIAVIX",
    "INDIA VIX": "^INDIAVIX",
}

TIMEFRAME_INTERVALS: dict[TimeFrame, str] = {
    TimeFrame.MINUTE_1: "1m",
    TimeFrame.MINUTE_30: "30m",
    TimeFrame.DAY: "1d",
    TimeFrame.WEEK: "1wk",
    TimeFrame.MONTH: "1mo",
}

EXCHANGE_SUFFIXES: dict[str, str] = {
    ".NS": "NSE",
    ".BO": "BSE",
}

QUOTE_FIELDS: dict[str, list[str]] = {
    "price": ["regularMarketPrice"],
    "change": ["regularMarketChange"],
    "prev_close": ["regularMarketPreviousClose"],
    "volume": ["regularMarketVolume"],
    "day_open": ["regularMarketOpen"],
    "day_high": ["regularMarketDayHigh"],
    "day_low": ["regularMarketDayLow"],
    "market_cap": ["marketCap"],
    "pe_ratio": ["trailingPE"],
    "week52_high": ["fiftyTwoWeekHigh"],
    "week52_low": ["fiftyTwoWeekLow"],
    "timestamp": ["regularMarketTime"],
}


def create_yahoo_config(
    crumb: str = "",
    base_url: str = YAHOO_BASE_URL,
    timeout_seconds: float = 5.0,
) -> ProviderConfig:
    """Create configuration for Yahoo Finance adapter."""
    return ProviderConfig(
        name="yahoo",
        source=QuoteSource.YAHOO,
        api_key=crumb or None,
        base_url=base_url.rstrip("/"),
        max_symbols_per_request=50,
        timeout_seconds=timeout_seconds,
        supported_data_types=[DataType.QUOTE, DataType.HISTORICAL, DataType.SEARCH],
        priorities={
            DataType.QUOTE: 20,        # Fallback for quotes
            DataType.HISTORICAL: 10,   # Primary for candles
            DataType.SEARCH: 10,
        },
        health_check_symbol="NIFTY 50",
    )


class YahooFinanceAdapter(BaseAdapter):
    """
    Yahoo Finance data provider adapter.

    Instrument mapping policy:
    - Headline indices use INDEX_MAP (^NSEI, ^BSESN, ...)
    - Symbols that already carry an exchange suffix or a caret pass through
    - Other plain tickers are assumed to be NSE listings (<SYMBOL>.NS)
    - Symbols containing whitespace are unsupported
    - A chart 404 marks the symbol unsupported

    Features:
    - Batch quotes through one /v7/finance/quote call
    - Historical candles from /v8/finance/chart
    - Symbol search limited to NSE/BSE listings
    """

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.normalizer = DataNormalizer()

    @property
    def has_credentials(self) -> bool:
        # The crumb is optional
        return True

    def _default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko)",
        }

    def _with_crumb(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.config.api_key:
            params["crumb"] = self.config.api_key
        return params

    # ==================== Instrument Mapping ====================

    def resolve_instrument(self, symbol: str) -> str:
        symbol = canonicalize_symbol(symbol)
        mapped = INDEX_MAP.get(symbol)
        if mapped:
            return mapped
        if " " in symbol:
            raise SymbolUnsupportedError(self.name, symbol)
        if symbol.startswith("^") or "." in symbol:
            return symbol
        return f"{symbol}.NS"

    # ==================== Quote Methods ====================

    async def get_quote(self, symbol: str) -> Quote:
        """Get quote for a single symbol."""
        symbol = canonicalize_symbol(symbol)
        ticker = self.resolve_instrument(symbol)

        results = await self._fetch_quotes([ticker])
        entry = results.get(ticker)
        if entry is None:
            raise SymbolUnsupportedError(self.name, symbol, f"no quote for {ticker}")
        return self._parse_quote(symbol, entry)

    async def get_batch_quotes(self, symbols: list[str]) -> list[Quote]:
        """Get quotes for multiple symbols."""
        tickers: dict[str, list[str]] = {}
        for symbol in symbols:
            symbol = canonicalize_symbol(symbol)
            try:
                aliases = tickers.setdefault(self.resolve_instrument(symbol), [])
                if symbol not in aliases:
                    aliases.append(symbol)
            except SymbolUnsupportedError as e:
                logger.debug(f"Skipping {symbol} in Yahoo batch: {e.message}")

        items = list(tickers.items())
        chunk_size = self.config.max_symbols_per_request
        quotes: list[Quote] = []
        errors: list[ProviderError] = []

        for i in range(0, len(items), chunk_size):
            chunk = items[i:i + chunk_size]
            try:
                results = await self._fetch_quotes([ticker for ticker, _ in chunk])
            except CredentialsExpiredError:
                raise
            except ProviderError as e:
                logger.warning(f"Yahoo batch chunk of {len(chunk)} failed: {e}")
                errors.append(e)
                continue

            for ticker, aliases in chunk:
                entry = results.get(ticker)
                if entry is None:
                    logger.debug(f"Yahoo returned no data for {ticker} ({', '.join(aliases)})")
                    continue
                quotes.extend(self._parse_quote(symbol, entry) for symbol in aliases)

        if errors and not quotes:
            raise errors[0]

        logger.debug(f"Yahoo batch: {len(quotes)}/{len(symbols)} quotes")
        return quotes

    async def _fetch_quotes(self, tickers: list[str]) -> dict[str, dict[str, Any]]:
        data = await self._get_json(
            "/v7/finance/quote",
            params=self._with_crumb({"symbols": ",".join(tickers)}),
        )
        return self._index_by_symbol(data)

    # ==================== Historical Methods ====================

    async def get_historical(self, symbol: str, range_: HistoricalRange) -> HistoricalSeries:
        """Get candles from the chart endpoint."""
        symbol = canonicalize_symbol(symbol)
        result = await self._fetch_chart(symbol, range_.period, TIMEFRAME_INTERVALS[range_.timeframe])

        timestamps = result.get("timestamp") or []
        indicators = (result.get("indicators") or {}).get("quote") or [{}]
        bars = indicators[0] if indicators else {}

        candles: list[Candle] = []
        for i, ts in enumerate(timestamps):
            close = self._at(bars.get("close"), i)
            if close is None:
                continue
            candles.append(
                Candle(
                    timestamp=self.normalizer.parse_timestamp(ts),
                    open=to_decimal(self._at(bars.get("open"), i), default=to_decimal(close)),
                    high=to_decimal(self._at(bars.get("high"), i), default=to_decimal(close)),
                    low=to_decimal(self._at(bars.get("low"), i), default=to_decimal(close)),
                    close=to_decimal(close),
                    volume=to_int(self._at(bars.get("volume"), i)),
                )
            )

        if not candles:
            raise TransientProviderError(self.name, f"No historical data for {symbol} ({range_.period})")

        try:
            return self.normalizer.build_series(symbol, range_, candles, self.source)
        except ValueError as e:
            raise TransientProviderError(self.name, str(e))

    async def get_previous_close(self, symbol: str) -> Decimal:
        """Previous session close from the chart metadata, else daily candles."""
        symbol = canonicalize_symbol(symbol)
        result = await self._fetch_chart(symbol, "5d", "1d")
        meta = result.get("meta") or {}
        prev_close = to_decimal(meta.get("previousClose") or meta.get("chartPreviousClose"))
        if prev_close > 0:
            return prev_close
        return await super().get_previous_close(symbol)

    async def _fetch_chart(self, symbol: str, period: str, interval: str) -> dict[str, Any]:
        ticker = self.resolve_instrument(symbol)
        data = await self._get_json(
            f"/v8/finance/chart/{ticker}",
            params={"range": period, "interval": interval, "includePrePost": "false"},
            symbol=symbol,
            unsupported_statuses=(404,),
        )

        chart = (data or {}).get("chart") or {}
        results = chart.get("result") or []
        if not results:
            error = chart.get("error") or {}
            if error.get("code") == "Not Found":
                raise SymbolUnsupportedError(self.name, symbol, error.get("description", "not found"))
            raise TransientProviderError(self.name, f"Empty chart response for {ticker}")
        return results[0]

    # ==================== Search ====================

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """Search symbols, keeping only NSE/BSE listings."""
        data = await self._get_json(
            "/v1/finance/search",
            params={"q": query, "quotesCount": limit, "newsCount": 0},
        )

        results: list[SearchResult] = []
        for item in (data or {}).get("quotes") or []:
            ticker = str(item.get("symbol", ""))
            suffix = next((s for s in EXCHANGE_SUFFIXES if ticker.endswith(s)), None)
            if suffix is None:
                continue
            results.append(
                SearchResult(
                    symbol=ticker[: -len(suffix)] if suffix == ".NS" else ticker,
                    name=item.get("longname") or item.get("shortname") or ticker,
                    exchange=EXCHANGE_SUFFIXES[suffix],
                    type=str(item.get("quoteType") or "EQUITY").upper(),
                )
            )
        return results

    # ==================== Helper Methods ====================

    def _index_by_symbol(self, data: Any) -> dict[str, dict[str, Any]]:
        """Index a /v7/finance/quote response by the returned symbol."""
        if not isinstance(data, dict):
            raise TransientProviderError(self.name, "Malformed quote response")

        response = data.get("quoteResponse") or {}
        results = response.get("result")
        if results is None:
            raise TransientProviderError(self.name, f"Malformed quote response: {response.get('error')}")

        return {
            str(entry["symbol"]).upper(): entry
            for entry in results
            if isinstance(entry, dict) and entry.get("symbol")
        }

    def _parse_quote(self, symbol: str, entry: dict[str, Any]) -> Quote:
        return self.normalizer.normalize_quote(entry, symbol, self.source, QUOTE_FIELDS)

    @staticmethod
    def _at(values: Optional[list], index: int) -> Any:
        if not values or index >= len(values):
            return None
        return values[index]
