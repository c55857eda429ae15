"""
Data Normalizer

Normalizes data from Upstox and Yahoo into the canonical model.
Handles symbol canonicalisation, period resolution, field extraction
and data validation.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Any
import re
from loguru import logger

from market_overview.data_providers.adapters.base import (
    Quote,
    Candle,
    HistoricalSeries,
    HistoricalRange,
    QuoteSource,
    TimeFrame,
    ZERO,
    utc_now,
)
from market_overview.utils.exceptions import InvalidPeriodError


# period -> (lookback, granularity)
PERIOD_TABLE: dict[str, tuple[timedelta, TimeFrame]] = {
    "1d": (timedelta(days=1), TimeFrame.MINUTE_1),
    "5d": (timedelta(days=5), TimeFrame.MINUTE_30),
    "1mo": (timedelta(days=30), TimeFrame.DAY),
    "3mo": (timedelta(days=90), TimeFrame.DAY),
    "6mo": (timedelta(days=180), TimeFrame.DAY),
    "1y": (timedelta(days=365), TimeFrame.WEEK),
    "2y": (timedelta(days=730), TimeFrame.WEEK),
    "5y": (timedelta(days=5 * 365), TimeFrame.MONTH),
    "10y": (timedelta(days=10 * 365), TimeFrame.MONTH),
}

# Last-resort previous closes for the headline indices, used only when the
# provider's own previous close and the daily-candle lookup both fail.
ESTIMATED_PREVIOUS_CLOSE: dict[str, Decimal] = {
    "NIFTY 50": Decimal("24750"),
    "NIFTY": Decimal("24750"),
    "SENSEX": Decimal("81500"),
    "BANKNIFTY": Decimal("51200"),
    "NIFTY BANK": Decimal("51200"),
    "VIX": Decimal("13.5"),
    "INDIA VIX": Decimal("13.5"),
}

_WHITESPACE = re.compile(r"\s+")


def canonicalize_symbol(symbol: str) -> str:
    """Strip, collapse inner whitespace and upper-case a symbol."""
    return _WHITESPACE.sub(" ", str(symbol).strip()).upper()


def resolve_period(period: str, now: Optional[datetime] = None) -> HistoricalRange:
    """
    Resolve a period string into a concrete request window.

    Raises:
        InvalidPeriodError: If the period is not one of PERIOD_TABLE
    """
    key = str(period).strip().lower()
    if key not in PERIOD_TABLE:
        raise InvalidPeriodError(period)

    lookback, timeframe = PERIOD_TABLE[key]
    end = now or utc_now()
    return HistoricalRange(period=key, timeframe=timeframe, start=end - lookback, end=end)


def estimate_previous_close(symbol: str) -> Optional[Decimal]:
    return ESTIMATED_PREVIOUS_CLOSE.get(canonicalize_symbol(symbol))


class DataNormalizer:
    """
    Normalizes provider payloads into Quote and HistoricalSeries objects.

    Features:
    - Multi-key field extraction with zero defaults
    - Timestamp normalization (UTC)
    - Candle ordering and de-duplication
    - Data quality checks (logged, never fatal)
    """

    def normalize_quote(
        self,
        raw_data: dict[str, Any],
        symbol: str,
        source: QuoteSource,
        field_map: dict[str, list[str]],
    ) -> Quote:
        """
        Normalize raw quote data from a provider.

        Args:
            raw_data: Raw data dictionary from provider
            symbol: Canonical symbol the data belongs to
            source: Provider that produced it
            field_map: Canonical field name -> candidate provider keys

        Returns:
            Normalized Quote object
        """
        def dec(name: str) -> Decimal:
            return self._extract_decimal(raw_data, field_map.get(name, [])) or ZERO

        def opt(name: str) -> Optional[Decimal]:
            return self._extract_decimal(raw_data, field_map.get(name, []))

        price = dec("price")
        change = dec("change")
        prev_close = dec("prev_close")

        quote = Quote(
            symbol=canonicalize_symbol(symbol),
            price=price,
            source=source,
            change=change,
            volume=self._extract_int(raw_data, field_map.get("volume", [])) or 0,
            day_high=dec("day_high"),
            day_low=dec("day_low"),
            day_open=dec("day_open"),
            prev_close=prev_close,
            market_cap=opt("market_cap"),
            pe_ratio=opt("pe_ratio"),
            week52_high=opt("week52_high"),
            week52_low=opt("week52_low"),
            timestamp=self._extract_timestamp(raw_data, field_map.get("timestamp", [])),
        )

        # Provider-reported change is overridden by price - prev_close
        if prev_close > 0 and change != 0 and abs(quote.change - change) > Decimal("0.01"):
            logger.debug(
                f"{source.value}: reported change {change} for {quote.symbol} "
                f"disagrees with price - prev_close ({quote.change})"
            )

        for warning in self.validate_quote(quote):
            logger.warning(f"{source.value} quote {quote.symbol}: {warning}")

        return quote

    def build_series(
        self,
        symbol: str,
        range_: HistoricalRange,
        candles: list[Candle],
        source: QuoteSource,
    ) -> HistoricalSeries:
        """
        Sort, de-duplicate and validate candles into a series.

        Candles with a non-positive close are dropped; for duplicate
        timestamps the last one wins.

        Raises:
            ValueError: If no usable candle remains
        """
        by_time: dict[datetime, Candle] = {}
        for candle in candles:
            if candle.close <= 0:
                continue
            by_time[candle.timestamp] = candle

        ordered = [by_time[ts] for ts in sorted(by_time)]
        for candle in ordered:
            for warning in self.validate_candle(candle):
                logger.debug(f"{source.value} candle {symbol} {candle.timestamp.isoformat()}: {warning}")

        return HistoricalSeries(
            symbol=canonicalize_symbol(symbol),
            timeframe=range_.timeframe,
            period=range_.period,
            candles=ordered,
            source=source,
        )

    def _extract_field(
        self,
        data: dict[str, Any],
        keys: list[str]
    ) -> Optional[Any]:
        """Extract a field trying multiple possible keys."""
        for key in keys:
            if key in data and data[key] is not None:
                return data[key]
        return None

    def _extract_decimal(
        self,
        data: dict[str, Any],
        keys: list[str]
    ) -> Optional[Decimal]:
        """Extract and convert a numeric field to Decimal."""
        value = self._extract_field(data, keys)
        return self.to_decimal(value)

    def to_decimal(self, value: Any) -> Optional[Decimal]:
        if value is None or isinstance(value, bool):
            return None

        try:
            if isinstance(value, Decimal):
                return value
            if isinstance(value, (int, float)):
                return Decimal(str(value))
            if isinstance(value, str):
                # Remove currency symbols and commas
                clean = re.sub(r'[,₹$%]', '', value.strip())
                return Decimal(clean) if clean else None
        except (InvalidOperation, ValueError):
            return None

        return None

    def _extract_int(
        self,
        data: dict[str, Any],
        keys: list[str]
    ) -> Optional[int]:
        """Extract and convert a numeric field to int."""
        value = self._extract_field(data, keys)
        if value is None:
            return None

        try:
            if isinstance(value, bool):
                return None
            if isinstance(value, int):
                return value
            if isinstance(value, float):
                return int(value)
            if isinstance(value, str):
                return int(float(value.replace(',', '').strip()))
        except (ValueError, TypeError):
            return None

        return None

    def _extract_timestamp(
        self,
        data: dict[str, Any],
        keys: list[str]
    ) -> datetime:
        """Extract and normalize a timestamp to UTC datetime."""
        value = self._extract_field(data, keys)
        if value is None:
            return utc_now()
        return self.parse_timestamp(value)

    def parse_timestamp(self, value: Any) -> datetime:
        """Parse epoch seconds/milliseconds or ISO-8601 text into UTC."""
        # Already a datetime
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)

        # Unix timestamp (seconds or milliseconds)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # Detect milliseconds (> year 2100 in seconds)
            if value > 4102444800:
                value = value / 1000
            return datetime.fromtimestamp(value, tz=timezone.utc)

        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                dt = datetime.fromisoformat(text)
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return dt.astimezone(timezone.utc)
            except ValueError:
                pass

        # Fallback
        logger.warning(f"Could not parse timestamp: {value}")
        return utc_now()

    def validate_quote(self, quote: Quote) -> list[str]:
        """
        Validate a quote for data quality issues.

        Returns:
            List of warning messages (empty if valid)
        """
        warnings = []

        if quote.price <= 0:
            warnings.append(f"Invalid price: {quote.price}")

        if quote.day_high and quote.day_low:
            if quote.day_low > quote.day_high:
                warnings.append("Invalid day range: low > high")
            elif quote.price > quote.day_high or quote.price < quote.day_low:
                warnings.append("Price outside day range")

        return warnings

    def validate_candle(self, candle: Candle) -> list[str]:
        """
        Validate OHLCV data for quality issues.

        Returns:
            List of warning messages (empty if valid)
        """
        warnings = []

        if candle.low > candle.high:
            warnings.append("Invalid range: low > high")

        if candle.open > candle.high or candle.open < candle.low:
            warnings.append("Open outside high/low range")

        if candle.close > candle.high or candle.close < candle.low:
            warnings.append("Close outside high/low range")

        if any(v <= 0 for v in [candle.open, candle.high, candle.low, candle.close]):
            warnings.append("Zero or negative OHLC values")

        return warnings
