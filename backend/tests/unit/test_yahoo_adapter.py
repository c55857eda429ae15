"""
Unit Tests - Yahoo Finance Adapter
"""
from datetime import datetime, timezone
from decimal import Decimal
import pytest

from market_overview.data_providers.adapters.base import (
    SymbolUnsupportedError,
    TransientProviderError,
    DataType,
    QuoteSource,
)
from market_overview.data_providers.adapters.yahoo import YahooFinanceAdapter, create_yahoo_config
from market_overview.data_providers.data_normalizer import resolve_period

from conftest import mock_response, mock_session


NOW = datetime(2024, 6, 14, 10, 0, tzinfo=timezone.utc)


def quote_response(*entries: dict) -> dict:
    return {"quoteResponse": {"result": list(entries), "error": None}}


def chart_response(timestamps, closes, meta=None) -> dict:
    return {
        "chart": {
            "result": [
                {
                    "meta": meta or {},
                    "timestamp": timestamps,
                    "indicators": {
                        "quote": [
                            {
                                "open": closes,
                                "high": closes,
                                "low": closes,
                                "close": closes,
                                "volume": [100] * len(closes),
                            }
                        ]
                    },
                }
            ],
            "error": None,
        }
    }


@pytest.fixture
def adapter() -> YahooFinanceAdapter:
    return YahooFinanceAdapter(create_yahoo_config(base_url="https://yahoo.test"))


class TestYahooConfig:

    def test_no_credentials_needed(self, adapter):
        assert adapter.has_credentials is True
        assert adapter.config.api_key is None

    def test_priorities_favour_historical(self):
        config = create_yahoo_config()

        assert config.priority_for(DataType.HISTORICAL) < config.priority_for(DataType.QUOTE)
        assert DataType.SEARCH in config.supported_data_types


class TestInstrumentMapping:

    @pytest.mark.parametrize("symbol,ticker", [
        ("NIFTY 50", "^NSEI"),
        ("sensex", "^BSESN"),
        ("BANKNIFTY", "^NSEBANK"),
        ("INDIA VIX", "^INDIAVIX"),
        ("RELIANCE", "RELIANCE.NS"),
        ("TCS.BO", "TCS.BO"),
        ("^CNXIT", "^CNXIT"),
    ])
    def test_resolve(self, adapter, symbol, ticker):
        assert adapter.resolve_instrument(symbol) == ticker

    def test_whitespace_symbol_unsupported(self, adapter):
        with pytest.raises(SymbolUnsupportedError):
            adapter.resolve_instrument("NIFTY IT")


class TestQuotes:
    """Tests for /v7/finance/quote parsing."""

    ENTRY = {
        "symbol": "RELIANCE.NS",
        "regularMarketPrice": 2500.0,
        "regularMarketChange": 30.0,
        "regularMarketPreviousClose": 2480.0,
        "regularMarketVolume": 5000000,
        "regularMarketDayHigh": 2510.0,
        "regularMarketDayLow": 2470.0,
        "marketCap": 16900000000000,
        "trailingPE": 27.5,
        "regularMarketTime": 1718359200,
    }

    @pytest.mark.asyncio
    async def test_parse_quote(self, adapter):
        """Previous close wins over the reported change."""
        adapter._session = mock_session(mock_response(json_data=quote_response(self.ENTRY)))

        quote = await adapter.get_quote("RELIANCE")

        assert quote.symbol == "RELIANCE"
        assert quote.source == QuoteSource.YAHOO
        assert quote.prev_close == Decimal("2480.0")
        assert quote.change == Decimal("20.0")
        assert quote.pe_ratio == Decimal("27.5")
        assert quote.timestamp == NOW

        _, kwargs = adapter._session.get.call_args
        assert kwargs["params"] == {"symbols": "RELIANCE.NS"}

    @pytest.mark.asyncio
    async def test_crumb_is_sent(self):
        adapter = YahooFinanceAdapter(create_yahoo_config(crumb="abc", base_url="https://yahoo.test"))
        adapter._session = mock_session(mock_response(json_data=quote_response(TestQuotes.ENTRY)))

        await adapter.get_quote("RELIANCE")

        _, kwargs = adapter._session.get.call_args
        assert kwargs["params"]["crumb"] == "abc"

    @pytest.mark.asyncio
    async def test_missing_result_is_unsupported(self, adapter):
        adapter._session = mock_session(mock_response(json_data=quote_response()))

        with pytest.raises(SymbolUnsupportedError):
            await adapter.get_quote("NOSUCH")

    @pytest.mark.asyncio
    async def test_malformed_response_is_transient(self, adapter):
        adapter._session = mock_session(mock_response(json_data={"quoteResponse": {"error": "bad"}}))

        with pytest.raises(TransientProviderError):
            await adapter.get_quote("RELIANCE")

    @pytest.mark.asyncio
    async def test_batch_maps_tickers_back(self, adapter):
        nifty = {"symbol": "^NSEI", "regularMarketPrice": 24800.0, "regularMarketPreviousClose": 24700.0}
        adapter._session = mock_session(mock_response(json_data=quote_response(self.ENTRY, nifty)))

        quotes = await adapter.get_batch_quotes(["RELIANCE", "NIFTY 50", "TCS"])

        assert {q.symbol for q in quotes} == {"RELIANCE", "NIFTY 50"}
        _, kwargs = adapter._session.get.call_args
        assert kwargs["params"]["symbols"] == "RELIANCE.NS,^NSEI,TCS.NS"

    @pytest.mark.asyncio
    async def test_batch_aliases_share_one_ticker(self, adapter):
        """Every requested alias of an index gets its own quote."""
        nifty = {"symbol": "^NSEI", "regularMarketPrice": 24800.0, "regularMarketPreviousClose": 24700.0}
        adapter._session = mock_session(mock_response(json_data=quote_response(nifty)))

        quotes = await adapter.get_batch_quotes(["NIFTY", "NIFTY 50"])

        assert [q.symbol for q in quotes] == ["NIFTY", "NIFTY 50"]
        assert all(q.price == Decimal("24800.0") for q in quotes)
        _, kwargs = adapter._session.get.call_args
        assert kwargs["params"]["symbols"] == "^NSEI"


class TestHistorical:
    """Tests for /v8/finance/chart parsing."""

    @pytest.mark.asyncio
    async def test_candles_skip_null_closes(self, adapter):
        data = chart_response([1718236800, 1718323200, 1718409600], [3900.0, None, 3920.0])
        adapter._session = mock_session(mock_response(json_data=data))

        series = await adapter.get_historical("TCS", resolve_period("1mo", NOW))

        assert len(series.candles) == 2
        assert series.last.close == Decimal("3920.0")
        url = adapter._session.get.call_args[0][0]
        assert url == "https://yahoo.test/v8/finance/chart/TCS.NS"
        _, kwargs = adapter._session.get.call_args
        assert kwargs["params"]["interval"] == "1d"
        assert kwargs["params"]["range"] == "1mo"

    @pytest.mark.asyncio
    async def test_chart_404_is_unsupported(self, adapter):
        adapter._session = mock_session(mock_response(status=404))

        with pytest.raises(SymbolUnsupportedError):
            await adapter.get_historical("NOSUCH", resolve_period("1mo", NOW))

    @pytest.mark.asyncio
    async def test_chart_not_found_error_is_unsupported(self, adapter):
        data = {"chart": {"result": None, "error": {"code": "Not Found", "description": "No data found"}}}
        adapter._session = mock_session(mock_response(json_data=data))

        with pytest.raises(SymbolUnsupportedError):
            await adapter.get_historical("NOSUCH", resolve_period("1mo", NOW))

    @pytest.mark.asyncio
    async def test_empty_chart_is_transient(self, adapter):
        adapter._session = mock_session(mock_response(json_data=chart_response([], [])))

        with pytest.raises(TransientProviderError):
            await adapter.get_historical("TCS", resolve_period("1mo", NOW))

    @pytest.mark.asyncio
    async def test_previous_close_from_meta(self, adapter):
        data = chart_response([1718236800], [24800.0], meta={"previousClose": 24750.5})
        adapter._session = mock_session(mock_response(json_data=data))

        assert await adapter.get_previous_close("NIFTY 50") == Decimal("24750.5")


class TestSearch:
    """Tests for symbol search."""

    @pytest.mark.asyncio
    async def test_only_indian_listings(self, adapter):
        data = {
            "quotes": [
                {"symbol": "RELIANCE.NS", "longname": "Reliance Industries Limited", "quoteType": "EQUITY"},
                {"symbol": "RELIANCE.BO", "shortname": "RELIANCE INDS", "quoteType": "EQUITY"},
                {"symbol": "RELI", "shortname": "Reliance Global", "quoteType": "EQUITY"},
            ]
        }
        adapter._session = mock_session(mock_response(json_data=data))

        results = await adapter.search("reliance")

        assert [(r.symbol, r.exchange) for r in results] == [("RELIANCE", "NSE"), ("RELIANCE.BO", "BSE")]
        assert results[0].name == "Reliance Industries Limited"
        assert results[1].name == "RELIANCE INDS"
