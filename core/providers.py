"""
portfolio-signals Core: Market Data Providers

Adapters for third-party daily price APIs. Each adapter performs exactly one
HTTP round-trip per call and never retries; retry, fallback and circuit
breaking belong to the gateway.

Providers return daily bars. Quotes are derived from bars so every provider
produces the same PriceQuote shape.
"""

import logging
import os
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from core.analytics import build_quote_from_bars
from core.exceptions import ProviderError
from core.models import PriceBar, PriceQuote

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_HISTORY_DAYS = 90

# Approximate shares outstanding, millions
SHARES_OUTSTANDING_MILLIONS: Dict[str, float] = {
    "AAPL": 15_300, "MSFT": 7_400, "GOOGL": 12_600, "AMZN": 10_600, "TSLA": 3_200,
    "META": 2_700, "NVDA": 2_500, "NFLX": 440, "AMD": 1_600, "INTC": 4_100,
}
DEFAULT_SHARES_MILLIONS = 1_000.0


def estimate_market_cap(symbol: str, price: float) -> float:
    shares = SHARES_OUTSTANDING_MILLIONS.get(symbol.upper(), DEFAULT_SHARES_MILLIONS)
    return shares * price * 1_000_000


def _utc_date(epoch_seconds: float) -> date:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).date()


class QuoteProvider(ABC):
    """
    Base class for a daily-price source.

    Subclasses set `name` and implement `fetch_bars`. `_get_json` maps
    transport and HTTP failures onto ProviderError with the retryable flag
    the gateway relies on.
    """

    name = "provider"
    requires_key = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self._now = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_env(cls, env_var: Optional[str], **kwargs) -> "QuoteProvider":
        api_key = os.getenv(env_var) if env_var else None
        return cls(api_key=api_key, **kwargs)

    def is_configured(self) -> bool:
        return bool(self.api_key) or not self.requires_key

    @abstractmethod
    def fetch_bars(self, symbol: str, days: int = DEFAULT_HISTORY_DAYS) -> List[PriceBar]:
        """Return up to `days` daily bars, newest first."""

    def quote(self, symbol: str, days: int = DEFAULT_HISTORY_DAYS) -> PriceQuote:
        bars = self.fetch_bars(symbol, days)
        if not bars:
            raise ProviderError(self.name, f"no price data for {symbol}", retryable=False)
        newest = max(bars, key=lambda bar: bar.date)
        return build_quote_from_bars(
            symbol,
            bars,
            source=self.name,
            as_of=self._now(),
            market_cap=estimate_market_cap(symbol, newest.close),
        )

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise ProviderError(self.name, f"timeout after {self.timeout}s") from exc
        except requests.exceptions.ConnectionError as exc:
            raise ProviderError(self.name, f"connection error: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise ProviderError(self.name, f"request failed: {exc}", retryable=False) from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise ProviderError(self.name, f"HTTP {status}", retryable=True, status_code=status)
        if status >= 400:
            raise ProviderError(self.name, f"HTTP {status}", retryable=False, status_code=status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "malformed JSON payload", status_code=status) from exc
        if not isinstance(payload, dict):
            raise ProviderError(self.name, "unexpected payload shape", status_code=status)
        return payload

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(configured={self.is_configured()})"


class AlphaVantageProvider(QuoteProvider):
    name = "alpha_vantage"
    base_url = "https://www.alphavantage.co/query"

    def fetch_bars(self, symbol: str, days: int = DEFAULT_HISTORY_DAYS) -> List[PriceBar]:
        payload = self._get_json(
            self.base_url,
            params={
                "function": "TIME_SERIES_DAILY",
                "symbol": symbol,
                "outputsize": "compact" if days <= 100 else "full",
                "apikey": self.api_key,
            },
        )

        if "Error Message" in payload:
            raise ProviderError(self.name, str(payload["Error Message"]), retryable=False)
        if "Note" in payload or "Information" in payload:
            # Rate-limit notices arrive as HTTP 200
            note = payload.get("Note") or payload.get("Information")
            raise ProviderError(self.name, f"rate limited: {note}", retryable=True)

        series = payload.get("Time Series (Daily)")
        if not isinstance(series, dict):
            raise ProviderError(self.name, f"no time series for {symbol}", retryable=False)

        bars: List[PriceBar] = []
        try:
            for day in sorted(series, reverse=True)[:days]:
                row = series[day]
                bars.append(
                    PriceBar(
                        date=date.fromisoformat(day),
                        close=float(row["4. close"]),
                        open=float(row["1. open"]) if "1. open" in row else None,
                        high=float(row["2. high"]) if "2. high" in row else None,
                        low=float(row["3. low"]) if "3. low" in row else None,
                        volume=float(row["5. volume"]) if "5. volume" in row else None,
                    )
                )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProviderError(self.name, f"malformed bar: {exc}") from exc
        return bars


class FinnhubProvider(QuoteProvider):
    name = "finnhub"
    base_url = "https://finnhub.io/api/v1/stock/candle"

    def fetch_bars(self, symbol: str, days: int = DEFAULT_HISTORY_DAYS) -> List[PriceBar]:
        end = self._now()
        start = end - timedelta(days=days)
        payload = self._get_json(
            self.base_url,
            params={
                "symbol": symbol,
                "resolution": "D",
                "from": int(start.timestamp()),
                "to": int(end.timestamp()),
                "token": self.api_key,
            },
        )

        if payload.get("error"):
            raise ProviderError(self.name, str(payload["error"]), retryable=False)
        if payload.get("s") != "ok":
            raise ProviderError(self.name, f"no candles for {symbol} (s={payload.get('s')})", retryable=False)

        try:
            timestamps = payload["t"]
            closes = payload["c"]
            highs = payload.get("h") or [None] * len(closes)
            bars = [
                PriceBar(date=_utc_date(ts), close=float(close), high=high)
                for ts, close, high in zip(timestamps, closes, highs)
                if close is not None
            ]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProviderError(self.name, f"malformed candles: {exc}") from exc

        bars.sort(key=lambda bar: bar.date, reverse=True)
        return bars[:days]


class FMPProvider(QuoteProvider):
    name = "fmp"
    base_url = "https://financialmodelingprep.com/api/v3/historical-price-full"

    def fetch_bars(self, symbol: str, days: int = DEFAULT_HISTORY_DAYS) -> List[PriceBar]:
        payload = self._get_json(f"{self.base_url}/{symbol}", params={"apikey": self.api_key})

        historical = payload.get("historical")
        if not historical:
            raise ProviderError(self.name, f"no history for {symbol}", retryable=False)

        try:
            bars = [
                PriceBar(
                    date=date.fromisoformat(str(row["date"])[:10]),
                    close=float(row["close"]),
                    open=row.get("open"),
                    high=row.get("high"),
                    low=row.get("low"),
                    volume=row.get("volume"),
                )
                for row in historical
            ]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProviderError(self.name, f"malformed history: {exc}") from exc

        bars.sort(key=lambda bar: bar.date, reverse=True)
        return bars[:days]


class YahooChartProvider(QuoteProvider):
    """Public chart endpoint; works without an API key."""

    name = "yahoo"
    requires_key = False
    base_url = "https://query1.finance.yahoo.com/v8/finance/chart"

    def fetch_bars(self, symbol: str, days: int = DEFAULT_HISTORY_DAYS) -> List[PriceBar]:
        payload = self._get_json(
            f"{self.base_url}/{symbol}",
            params={"range": f"{days}d", "interval": "1d"},
        )

        try:
            chart = payload.get("chart") or {}
            error = chart.get("error")
            results = chart.get("result")
        except AttributeError as exc:
            raise ProviderError(self.name, f"malformed chart: {exc}") from exc
        if error:
            raise ProviderError(self.name, str(error), retryable=False)
        if not results:
            raise ProviderError(self.name, f"no chart for {symbol}", retryable=False)

        try:
            result = results[0]
            timestamps = result.get("timestamp") or []
            series = result["indicators"]["quote"][0]
            closes = series.get("close") or []
            highs = series.get("high") or [None] * len(closes)
            bars = [
                PriceBar(date=_utc_date(ts), close=float(close), high=high)
                for ts, close, high in zip(timestamps, closes, highs)
                if close is not None
            ]
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(self.name, f"malformed chart: {exc}") from exc

        bars.sort(key=lambda bar: bar.date, reverse=True)
        return bars[:days]


PROVIDER_TYPES = {
    AlphaVantageProvider.name: AlphaVantageProvider,
    FinnhubProvider.name: FinnhubProvider,
    FMPProvider.name: FMPProvider,
    YahooChartProvider.name: YahooChartProvider,
}


def build_providers(provider_configs: List[Dict[str, Any]], timeout: float = DEFAULT_TIMEOUT_SECONDS) -> List[QuoteProvider]:
    """
    Instantiate providers in priority order from policy config entries.

    Each entry: {"name": ..., "api_key_env": ..., "enabled": bool}
    """
    providers: List[QuoteProvider] = []
    for entry in provider_configs:
        if not entry.get("enabled", True):
            continue
        name = entry["name"]
        provider_cls = PROVIDER_TYPES.get(name)
        if provider_cls is None:
            raise ValueError(f"Unknown market data provider: {name}")
        provider = provider_cls.from_env(entry.get("api_key_env"), timeout=entry.get("timeout_seconds") or timeout)
        if not provider.is_configured():
            logger.warning("Provider %s has no API key (%s); it will be skipped", name, entry.get("api_key_env"))
        providers.append(provider)
    return providers
