"""
Upstox Adapter

Provides access to the Upstox v2 REST API for NSE/BSE quotes and candles.
Requires an OAuth access token, which expires daily.

API Documentation: https://upstox.com/developer/api-documentation/
"""
from typing import Optional, Any
from urllib.parse import quote as url_quote
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
    ProviderError,
    CredentialsExpiredError,
    SymbolUnsupportedError,
    TransientProviderError,
    to_decimal,
    to_int,
    IST,
)
from market_overview.data_providers.data_normalizer import DataNormalizer, canonicalize_symbol


UPSTOX_BASE_URL = "https://api.upstox.com/v2"


# Canonical symbol -> Upstox instrument key
INSTRUMENT_MAP: dict[str, str] = {
    # Indices
    "NIFTY 50": "NSE_INDEX|Nifty 50",
    "NIFTY": "NSE_INDEX|Nifty 50",
    "BANKNIFTY": "NSE_INDEX|Nifty Bank",
    "NIFTY BANK": "NSE_INDEX|Nifty Bank",
    "SENSEX": "BSE_INDEX|SENSEX",
    "VIX": "NSE_INDEX|India VIX",
    "INDIA VIX": "NSE_INDEX|India VIX",
    # NSE equities
    "RELIANCE": "NSE_EQ|INE002A01018",
    "TCS": "NSE_EQ|INE467B01029",
    "INFY": "NSE_EQ|INE009A01021",
    "HDFCBANK": "NSE_EQ|INE040A01034",
    "ICICIBANK": "NSE_EQ|INE090A01013",
    "HINDUNILVR": "NSE_EQ|INE030A01027",
    "SBIN": "NSE_EQ|INE062A01020",
    "BHARTIARTL": "NSE_EQ|INE397D01024",
    "ITC": "NSE_EQ|INE154A01025",
    "LT": "NSE_EQ|INE018A01030",
}

TIMEFRAME_INTERVALS: dict[TimeFrame, str] = {
    TimeFrame.MINUTE_1: "1minute",
    TimeFrame.MINUTE_30: "30minute",
    TimeFrame.DAY: "day",
    TimeFrame.WEEK: "week",
    TimeFrame.MONTH: "month",
}

QUOTE_FIELDS: dict[str, list[str]] = {
    "price": ["last_price", "ltp"],
    "change": ["net_change"],
    "volume": ["volume"],
    "day_open": ["ohlc_open"],
    "day_high": ["ohlc_high"],
    "day_low": ["ohlc_low"],
    "timestamp": ["timestamp", "last_trade_time"],
}


def create_upstox_config(
    access_token: str,
    base_url: str = UPSTOX_BASE_URL,
    timeout_seconds: float = 5.0,
) -> ProviderConfig:
    """Create configuration for Upstox adapter."""
    return ProviderConfig(
        name="upstox",
        source=QuoteSource.UPSTOX,
        api_key=access_token,
        base_url=base_url.rstrip("/"),
        max_symbols_per_request=500,
        timeout_seconds=timeout_seconds,
        supported_data_types=[DataType.QUOTE, DataType.HISTORICAL],
        priorities={
            DataType.QUOTE: 10,        # Primary for quotes
            DataType.HISTORICAL: 20,   # Backup for candles
        },
        health_check_symbol="NIFTY 50",
    )


class UpstoxAdapter(BaseAdapter):
    """
    Upstox data provider adapter.

    Instrument mapping policy:
    - Symbols in INSTRUMENT_MAP use their exact instrument key
    - Other plain tickers are guessed as NSE_EQ|<SYMBOL>
    - Unmapped symbols containing whitespace are unsupported
    - A guessed key that returns no data is unsupported

    Usage:
        config = create_upstox_config("access_token")
        adapter = UpstoxAdapter(config)
        await adapter.initialize()

        quote = await adapter.get_quote("RELIANCE")
        series = await adapter.get_historical("NIFTY 50", resolve_period("1mo"))
    """

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.normalizer = DataNormalizer()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _require_token(self) -> None:
        if not self.has_credentials:
            raise CredentialsExpiredError(self.name, "No Upstox access token configured")

    # ==================== Instrument Mapping ====================

    def resolve_instrument(self, symbol: str) -> str:
        symbol = canonicalize_symbol(symbol)
        mapped = INSTRUMENT_MAP.get(symbol)
        if mapped:
            return mapped
        if " " in symbol:
            raise SymbolUnsupportedError(self.name, symbol)
        logger.debug(f"No Upstox mapping for {symbol}, guessing NSE_EQ|{symbol}")
        return f"NSE_EQ|{symbol}"

    def is_guessed(self, symbol: str) -> bool:
        return canonicalize_symbol(symbol) not in INSTRUMENT_MAP

    # ==================== Quote Methods ====================

    async def get_quote(self, symbol: str) -> Quote:
        """Get full market quote for one symbol."""
        self._require_token()
        symbol = canonicalize_symbol(symbol)
        instrument_key = self.resolve_instrument(symbol)
        guessed = self.is_guessed(symbol)

        data = await self._get_json(
            "/market-quote/quotes",
            params={"instrument_key": instrument_key},
            symbol=symbol if guessed else None,
            unsupported_statuses=(400, 404),
        )
        entries = self._index_by_instrument(data)

        entry = entries.get(instrument_key)
        if entry is None:
            if guessed:
                raise SymbolUnsupportedError(self.name, symbol, f"no data for guessed key {instrument_key}")
            raise TransientProviderError(self.name, f"No quote data returned for {symbol}")

        return self._parse_quote(symbol, entry)

    async def get_batch_quotes(self, symbols: list[str]) -> list[Quote]:
        """Get quotes for many symbols, chunked by max_symbols_per_request."""
        self._require_token()

        keyed: dict[str, str] = {}
        for symbol in symbols:
            symbol = canonicalize_symbol(symbol)
            try:
                keyed[symbol] = self.resolve_instrument(symbol)
            except SymbolUnsupportedError as e:
                logger.debug(f"Skipping {symbol} in Upstox batch: {e.message}")

        items = list(keyed.items())
        chunk_size = self.config.max_symbols_per_request
        quotes: list[Quote] = []
        errors: list[ProviderError] = []

        for i in range(0, len(items), chunk_size):
            chunk = items[i:i + chunk_size]
            try:
                data = await self._get_json(
                    "/market-quote/quotes",
                    params={"instrument_key": ",".join(dict.fromkeys(key for _, key in chunk))},
                )
            except CredentialsExpiredError:
                raise
            except ProviderError as e:
                logger.warning(f"Upstox batch chunk of {len(chunk)} failed: {e}")
                errors.append(e)
                continue

            entries = self._index_by_instrument(data)
            for symbol, key in chunk:
                entry = entries.get(key)
                if entry is None:
                    logger.debug(f"Upstox returned no data for {symbol} ({key})")
                    continue
                quotes.append(self._parse_quote(symbol, entry))

        if errors and not quotes:
            raise errors[0]

        logger.debug(f"Upstox batch: {len(quotes)}/{len(symbols)} quotes")
        return quotes

    # ==================== Historical Methods ====================

    async def get_historical(self, symbol: str, range_: HistoricalRange) -> HistoricalSeries:
        """Get candles for a resolved range."""
        self._require_token()
        symbol = canonicalize_symbol(symbol)
        instrument_key = self.resolve_instrument(symbol)
        guessed = self.is_guessed(symbol)
        interval = TIMEFRAME_INTERVALS[range_.timeframe]
        encoded_key = url_quote(instrument_key, safe="")

        if range_.period == "1d":
            path = f"/historical-candle/intraday/{encoded_key}/{interval}"
        else:
            to_date = range_.end.astimezone(IST).date().isoformat()
            from_date = range_.start.astimezone(IST).date().isoformat()
            path = f"/historical-candle/{encoded_key}/{interval}/{to_date}/{from_date}"

        data = await self._get_json(
            path,
            symbol=symbol if guessed else None,
            unsupported_statuses=(400, 404),
        )
        rows = ((data or {}).get("data") or {}).get("candles") or []
        candles = [c for c in (self._parse_candle(row) for row in rows) if c is not None]

        if not candles:
            if guessed:
                raise SymbolUnsupportedError(self.name, symbol, f"no candles for guessed key {instrument_key}")
            raise TransientProviderError(self.name, f"No historical data for {symbol} ({range_.period})")

        try:
            return self.normalizer.build_series(symbol, range_, candles, self.source)
        except ValueError as e:
            raise TransientProviderError(self.name, str(e))

    # ==================== Helper Methods ====================

    def _index_by_instrument(self, data: Any) -> dict[str, dict[str, Any]]:
        """
        Index a market-quote response by instrument key.

        Upstox keys the response by "SEGMENT:TRADING_SYMBOL"; each entry
        carries its "SEGMENT|ISIN" key in instrument_token.
        """
        if not isinstance(data, dict):
            raise TransientProviderError(self.name, "Malformed quote response")

        payload = data.get("data") or {}
        if not isinstance(payload, dict):
            raise TransientProviderError(self.name, "Malformed quote response")

        entries: dict[str, dict[str, Any]] = {}
        for response_key, entry in payload.items():
            if not isinstance(entry, dict):
                continue
            token = entry.get("instrument_token") or response_key.replace(":", "|")
            entries[token] = entry
        return entries

    def _parse_quote(self, symbol: str, entry: dict[str, Any]) -> Quote:
        flat = dict(entry)
        for key, value in (entry.get("ohlc") or {}).items():
            flat[f"ohlc_{key}"] = value

        # net_change is relative to the previous close, so the Quote derives prev_close from it
        return self.normalizer.normalize_quote(flat, symbol, self.source, QUOTE_FIELDS)

    def _parse_candle(self, row: Any) -> Optional[Candle]:
        """Parse a [timestamp, open, high, low, close, volume, oi] row."""
        if not isinstance(row, (list, tuple)) or len(row) < 5:
            return None
        return Candle(
            timestamp=self.normalizer.parse_timestamp(row[0]),
            open=to_decimal(row[1]),
            high=to_decimal(row[2]),
            low=to_decimal(row[3]),
            close=to_decimal(row[4]),
            volume=to_int(row[5]) if len(row) > 5 else 0,
        )
