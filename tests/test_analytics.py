"""
Tests for the volatility / analytics calculator.
"""
import math
from datetime import date, datetime, timedelta, timezone

import pytest

from core.analytics import (
    annualized_volatility,
    build_quote_from_bars,
    classify_volatility,
    confidence_score,
    log_returns,
    max_drawdown_pct,
    portfolio_volatility,
    sharpe_ratio,
    volatility_metrics,
    window_metrics,
)
from core.models import PriceBar, VolatilityRiskLevel
from tests.helpers import make_bars, make_quote

NOW = datetime(2024, 5, 15, 14, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "pct,level",
    [
        (0.0, VolatilityRiskLevel.LOW),
        (14.99, VolatilityRiskLevel.LOW),
        (15.0, VolatilityRiskLevel.MEDIUM),
        (25.0, VolatilityRiskLevel.HIGH),
        (34.9, VolatilityRiskLevel.HIGH),
        (35.0, VolatilityRiskLevel.EXTREME),
    ],
)
def test_classify_volatility_buckets(pct, level):
    assert classify_volatility(pct) is level


class TestConfidence:
    def test_fresh_data(self):
        assert confidence_score(NOW, 20.0, now=NOW) == pytest.approx(90.0)

    def test_recency_decays_after_four_hours(self):
        fetched = NOW - timedelta(hours=14)
        # recency 50, volatility term 80
        assert confidence_score(fetched, 20.0, now=NOW) == pytest.approx(65.0)

    def test_old_data_and_extreme_volatility_floor_at_zero(self):
        fetched = NOW - timedelta(hours=30)
        assert confidence_score(fetched, 150.0, now=NOW) == 0.0


def test_volatility_metrics_from_quote():
    metrics = volatility_metrics(make_quote("TSLA", volatility=0.2, fetched_at=NOW), now=NOW)

    assert metrics.symbol == "TSLA"
    assert metrics.annualized_pct == pytest.approx(20.0)
    assert metrics.daily_pct == pytest.approx(20.0 / math.sqrt(252))
    assert metrics.monthly_pct == pytest.approx(20.0 / math.sqrt(12))
    assert metrics.risk_level is VolatilityRiskLevel.MEDIUM
    assert metrics.confidence == pytest.approx(90.0)


class TestPortfolioVolatility:
    def test_weighted_statistics(self):
        result = portfolio_volatility([(20.0, 100.0), (40.0, 300.0)])

        assert result.weights == pytest.approx([0.25, 0.75])
        assert result.weighted_volatility == pytest.approx(35.0)
        assert result.average_volatility == pytest.approx(30.0)
        assert result.diversification_ratio == pytest.approx(30.0 / 35.0)
        assert result.concentration_risk == pytest.approx(62.5)

    def test_empty_portfolio(self):
        result = portfolio_volatility([])
        assert result.weighted_volatility == 0.0
        assert result.weights == []


class TestHistoryStatistics:
    def test_log_returns_skip_non_positive_prices(self):
        assert log_returns([100, 0, 110]) == []
        assert log_returns([100, 110]) == pytest.approx([math.log(1.1)])

    def test_constant_series_has_no_volatility(self):
        closes = [50.0] * 30
        assert annualized_volatility(closes) == 0.0
        assert sharpe_ratio(closes) == 0.0

    def test_max_drawdown(self):
        assert max_drawdown_pct([100, 120, 90, 110]) == pytest.approx(-25.0)
        assert max_drawdown_pct([1, 2, 3]) == 0.0

    def test_window_metrics(self):
        bars = make_bars([100, 105, 95, 110])
        stats = window_metrics("AAPL", bars, days=30)

        assert stats["start_price"] == 100
        assert stats["end_price"] == 110
        assert stats["return_pct"] == 10.0
        assert stats["top_price"] == 110
        assert stats["max_drawdown_pct"] < 0

    def test_window_metrics_needs_two_bars(self):
        with pytest.raises(ValueError):
            window_metrics("AAPL", make_bars([100]), days=30)


class TestBuildQuote:
    def _bars(self):
        return [
            PriceBar(date(2024, 4, 1), 100.0),
            PriceBar(date(2024, 4, 30), 110.0),
            PriceBar(date(2024, 5, 1), 110.0),
            PriceBar(date(2024, 5, 10), 130.0),
            PriceBar(date(2024, 5, 15), 121.0),
        ]

    def test_fields_derived_from_history(self):
        quote = build_quote_from_bars("aapl", self._bars(), source="fmp", as_of=NOW, market_cap=5.0)

        assert quote.symbol == "AAPL"
        assert quote.price == 121.0
        assert quote.high_30d == 130.0
        assert quote.high_60d == 130.0
        assert quote.this_month_pct == pytest.approx(10.0)
        assert quote.last_month_pct == pytest.approx(10.0)
        assert quote.volatility > 0
        assert quote.fetched_at == NOW
        assert quote.source == "fmp"
        assert not quote.stale

    def test_january_compares_against_december(self):
        bars = [
            PriceBar(date(2023, 12, 1), 50.0),
            PriceBar(date(2023, 12, 29), 40.0),
            PriceBar(date(2024, 1, 5), 40.0),
        ]
        quote = build_quote_from_bars("X", bars, source="s", as_of=datetime(2024, 1, 5, tzinfo=timezone.utc))
        assert quote.last_month_pct == pytest.approx(-20.0)
        assert quote.this_month_pct == 0.0

    def test_no_bars(self):
        with pytest.raises(ValueError):
            build_quote_from_bars("X", [], source="s")
