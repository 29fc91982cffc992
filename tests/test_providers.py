"""
Tests for provider adapters. HTTP is patched at core.providers.requests.get.
"""
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest import mock

import pytest
import requests

from core.exceptions import ProviderError
from core.gateway import MarketDataGateway
from core.models import ErrorKind
from core.providers import (
    AlphaVantageProvider,
    FinnhubProvider,
    FMPProvider,
    YahooChartProvider,
    build_providers,
    estimate_market_cap,
)

NOW = datetime(2024, 5, 15, 21, 0, tzinfo=timezone.utc)


def _response(payload=None, status=200, bad_json=False):
    def _json():
        if bad_json:
            raise ValueError("not json")
        return payload

    return SimpleNamespace(status_code=status, json=_json)


@pytest.fixture
def http_get():
    with mock.patch("core.providers.requests.get") as patched:
        yield patched


class TestTransportErrors:
    def _provider(self):
        return AlphaVantageProvider(api_key="k", timeout=2.0, now=lambda: NOW)

    def test_timeout_is_retryable(self, http_get):
        http_get.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(ProviderError) as exc_info:
            self._provider().fetch_bars("AAPL")
        assert exc_info.value.retryable

    def test_connection_error_is_retryable(self, http_get):
        http_get.side_effect = requests.exceptions.ConnectionError("reset")
        with pytest.raises(ProviderError) as exc_info:
            self._provider().fetch_bars("AAPL")
        assert exc_info.value.retryable

    @pytest.mark.parametrize("status,retryable", [(429, True), (502, True), (401, False), (404, False)])
    def test_http_status_classification(self, http_get, status, retryable):
        http_get.return_value = _response({}, status=status)
        with pytest.raises(ProviderError) as exc_info:
            self._provider().fetch_bars("AAPL")
        assert exc_info.value.retryable is retryable
        assert exc_info.value.status_code == status

    def test_malformed_json_is_retryable(self, http_get):
        http_get.return_value = _response(bad_json=True)
        with pytest.raises(ProviderError) as exc_info:
            self._provider().fetch_bars("AAPL")
        assert exc_info.value.retryable

    def test_timeout_passed_to_requests(self, http_get):
        http_get.return_value = _response({"Time Series (Daily)": {"2024-05-15": {"4. close": "10"}}})
        self._provider().fetch_bars("AAPL")
        assert http_get.call_args.kwargs["timeout"] == 2.0


class TestAlphaVantage:
    def test_parses_daily_series_newest_first(self, http_get):
        http_get.return_value = _response(
            {
                "Time Series (Daily)": {
                    "2024-05-14": {"4. close": "180.0", "2. high": "182.0"},
                    "2024-05-15": {"4. close": "185.5", "2. high": "186.0"},
                }
            }
        )
        bars = AlphaVantageProvider(api_key="k").fetch_bars("AAPL")
        assert [bar.date for bar in bars] == [date(2024, 5, 15), date(2024, 5, 14)]
        assert bars[0].close == 185.5

    def test_rate_limit_note_is_retryable(self, http_get):
        http_get.return_value = _response({"Note": "5 calls per minute"})
        with pytest.raises(ProviderError) as exc_info:
            AlphaVantageProvider(api_key="k").fetch_bars("AAPL")
        assert exc_info.value.retryable

    def test_error_message_is_rejected(self, http_get):
        http_get.return_value = _response({"Error Message": "Invalid API call"})
        with pytest.raises(ProviderError) as exc_info:
            AlphaVantageProvider(api_key="k").fetch_bars("ZZZZ")
        assert not exc_info.value.retryable


class TestFinnhub:
    def test_parses_candles(self, http_get):
        http_get.return_value = _response(
            {"s": "ok", "t": [1715731200, 1715817600], "c": [10.0, 11.0], "h": [10.5, 11.5]}
        )
        bars = FinnhubProvider(api_key="k", now=lambda: NOW).fetch_bars("MSFT", days=30)
        assert [bar.close for bar in bars] == [11.0, 10.0]
        params = http_get.call_args.kwargs["params"]
        assert params["resolution"] == "D"
        assert params["token"] == "k"

    def test_no_data_is_rejected(self, http_get):
        http_get.return_value = _response({"s": "no_data"})
        with pytest.raises(ProviderError) as exc_info:
            FinnhubProvider(api_key="k", now=lambda: NOW).fetch_bars("MSFT")
        assert not exc_info.value.retryable


class TestFMP:
    def test_parses_historical(self, http_get):
        http_get.return_value = _response(
            {"historical": [{"date": "2024-05-14", "close": 50.0}, {"date": "2024-05-15", "close": 52.0}]}
        )
        bars = FMPProvider(api_key="k").fetch_bars("AMD")
        assert bars[0].date == date(2024, 5, 15)
        assert http_get.call_args.args[0].endswith("/AMD")


class TestYahoo:
    def test_works_without_key_and_skips_null_closes(self, http_get):
        http_get.return_value = _response(
            {
                "chart": {
                    "result": [
                        {
                            "timestamp": [1715731200, 1715817600, 1715904000],
                            "indicators": {"quote": [{"close": [10.0, None, 12.0]}]},
                        }
                    ],
                    "error": None,
                }
            }
        )
        provider = YahooChartProvider()
        assert provider.is_configured()
        bars = provider.fetch_bars("NVDA", days=5)
        assert [bar.close for bar in bars] == [12.0, 10.0]
        assert http_get.call_args.kwargs["params"] == {"range": "5d", "interval": "1d"}

    @pytest.mark.parametrize("chart", [["unexpected"], "nope", {"result": ["not-a-dict"]}])
    def test_malformed_chart_is_retryable_provider_error(self, http_get, chart):
        http_get.return_value = _response({"chart": chart})
        with pytest.raises(ProviderError) as exc_info:
            YahooChartProvider().fetch_bars("AAPL")
        assert exc_info.value.retryable

    def test_malformed_chart_degrades_through_gateway(self, http_get, clock):
        http_get.return_value = _response({"chart": ["unexpected"]})
        gateway = MarketDataGateway([YahooChartProvider()], clock=clock, sleep=clock.sleep, retry_attempts=2)

        result = gateway.fetch_quote("AAPL")

        assert not result.ok
        assert result.error_kind is ErrorKind.EXHAUSTED
        assert http_get.call_count == 2


class TestQuote:
    def test_quote_built_from_bars(self, http_get):
        http_get.return_value = _response(
            {"historical": [{"date": "2024-05-14", "close": 100.0}, {"date": "2024-05-15", "close": 110.0}]}
        )
        quote = FMPProvider(api_key="k", now=lambda: NOW).quote("AAPL")

        assert quote.symbol == "AAPL"
        assert quote.price == 110.0
        assert quote.high_60d == 110.0
        assert quote.source == "fmp"
        assert quote.fetched_at == NOW
        assert quote.market_cap == estimate_market_cap("AAPL", 110.0)

    def test_empty_history_is_rejected(self):
        provider = YahooChartProvider(now=lambda: NOW)
        with mock.patch.object(YahooChartProvider, "fetch_bars", return_value=[]):
            with pytest.raises(ProviderError) as exc_info:
                provider.quote("AAPL")
        assert not exc_info.value.retryable


class TestBuildProviders:
    def test_priority_order_and_env_keys(self, monkeypatch):
        monkeypatch.setenv("FINNHUB_API_KEY", "secret")
        monkeypatch.delenv("FMP_API_KEY", raising=False)
        providers = build_providers(
            [
                {"name": "finnhub", "api_key_env": "FINNHUB_API_KEY"},
                {"name": "fmp", "api_key_env": "FMP_API_KEY"},
                {"name": "alpha_vantage", "api_key_env": "AV", "enabled": False},
                {"name": "yahoo"},
            ],
            timeout=3.0,
        )
        assert [p.name for p in providers] == ["finnhub", "fmp", "yahoo"]
        assert providers[0].is_configured()
        assert not providers[1].is_configured()
        assert providers[2].timeout == 3.0

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_providers([{"name": "bloomberg"}])
