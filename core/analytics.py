"""
portfolio-signals Core: Volatility / Analytics Calculator

Pure computations over quotes and daily price history. No I/O.

Conventions:
- Closes passed to the return/volatility helpers are chronological (oldest first)
- Volatility percentages are annualized unless the name says otherwise
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from core.models import (
    PortfolioVolatility,
    PriceBar,
    PriceQuote,
    VolatilityMetrics,
    VolatilityRiskLevel,
)

TRADING_DAYS_PER_YEAR = 252
MONTHS_PER_YEAR = 12

# Risk buckets on annualized volatility %, upper bound exclusive
LOW_VOLATILITY_PCT = 15.0
MEDIUM_VOLATILITY_PCT = 25.0
HIGH_VOLATILITY_PCT = 35.0

# Data recency used by the confidence score
FULL_CONFIDENCE_HOURS = 4.0
ZERO_CONFIDENCE_HOURS = 24.0


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pstdev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    m = _mean(values)
    return math.sqrt(_mean([(v - m) ** 2 for v in values]))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def classify_volatility(annualized_pct: float) -> VolatilityRiskLevel:
    if annualized_pct < LOW_VOLATILITY_PCT:
        return VolatilityRiskLevel.LOW
    if annualized_pct < MEDIUM_VOLATILITY_PCT:
        return VolatilityRiskLevel.MEDIUM
    if annualized_pct < HIGH_VOLATILITY_PCT:
        return VolatilityRiskLevel.HIGH
    return VolatilityRiskLevel.EXTREME


def confidence_score(
    fetched_at: datetime,
    annualized_pct: float,
    now: Optional[datetime] = None,
) -> float:
    """
    Blend data recency and volatility into a 0-100 confidence score.

    Recency is 100 up to 4 hours old, then decays linearly to 0 at 24 hours.
    The volatility term is 100 minus the annualized volatility %.
    """
    now = now or datetime.now(timezone.utc)
    age_hours = max((now - fetched_at).total_seconds(), 0.0) / 3600.0

    if age_hours <= FULL_CONFIDENCE_HOURS:
        recency = 100.0
    else:
        span = ZERO_CONFIDENCE_HOURS - FULL_CONFIDENCE_HOURS
        recency = 100.0 * (1.0 - (age_hours - FULL_CONFIDENCE_HOURS) / span)
    recency = _clamp(recency, 0.0, 100.0)

    volatility_term = _clamp(100.0 - annualized_pct, 0.0, 100.0)
    return _clamp((recency + volatility_term) / 2.0, 0.0, 100.0)


def volatility_metrics(quote: PriceQuote, now: Optional[datetime] = None) -> VolatilityMetrics:
    """Derive volatility statistics for one quote (volatility already annualized upstream)."""
    annualized = quote.volatility * 100.0
    return VolatilityMetrics(
        symbol=quote.symbol,
        annualized_pct=annualized,
        daily_pct=annualized / math.sqrt(TRADING_DAYS_PER_YEAR),
        monthly_pct=annualized / math.sqrt(MONTHS_PER_YEAR),
        risk_level=classify_volatility(annualized),
        confidence=confidence_score(quote.fetched_at, annualized, now=now),
    )


def portfolio_volatility(holdings: Iterable[Tuple[float, float]]) -> PortfolioVolatility:
    """
    Aggregate per-position volatility into portfolio statistics.

    Args:
        holdings: (annualized volatility %, weight or market value) pairs.
                  Weights are normalized to sum to 1.
    """
    pairs = [(float(vol), max(float(weight), 0.0)) for vol, weight in holdings]
    total_weight = sum(weight for _, weight in pairs)
    if not pairs or total_weight <= 0:
        return PortfolioVolatility(0.0, 0.0, 0.0, 0.0, [])

    weights = [weight / total_weight for _, weight in pairs]
    vols = [vol for vol, _ in pairs]

    weighted = sum(vol * w for vol, w in zip(vols, weights))
    average = _mean(vols)
    diversification = average / weighted if weighted > 0 else 0.0
    hhi = sum(w * w for w in weights)

    return PortfolioVolatility(
        weighted_volatility=weighted,
        average_volatility=average,
        diversification_ratio=diversification,
        concentration_risk=hhi * 100.0,
        weights=weights,
    )


# ---------------------------------------------------------------------------
# Daily price history statistics
# ---------------------------------------------------------------------------

def log_returns(closes: Sequence[float]) -> List[float]:
    return [
        math.log(curr / prev)
        for prev, curr in zip(closes, closes[1:])
        if prev > 0 and curr > 0
    ]


def annualized_volatility(closes: Sequence[float]) -> float:
    """Annualized volatility % from daily closes: stdev(log returns) * sqrt(252) * 100."""
    returns = log_returns(closes)
    if not returns:
        return 0.0
    return _pstdev(returns) * math.sqrt(TRADING_DAYS_PER_YEAR) * 100.0


def sharpe_ratio(closes: Sequence[float], risk_free_annual: float = 0.02) -> float:
    returns = log_returns(closes)
    if not returns:
        return 0.0
    sd = _pstdev(returns)
    if sd == 0:
        return 0.0
    rf_daily = risk_free_annual / TRADING_DAYS_PER_YEAR
    return ((_mean(returns) - rf_daily) / sd) * math.sqrt(TRADING_DAYS_PER_YEAR)


def max_drawdown_pct(closes: Sequence[float]) -> float:
    """Largest peak-to-trough decline as a negative percentage (0 when none)."""
    if not closes:
        return 0.0
    peak = closes[0]
    worst = 0.0
    for price in closes:
        peak = max(peak, price)
        if peak > 0:
            worst = min(worst, (price / peak - 1.0) * 100.0)
    return worst


def window_metrics(symbol: str, bars: Sequence[PriceBar], days: int) -> Dict[str, float]:
    """
    Return/volatility/drawdown statistics over the trailing `days` calendar days.

    Raises:
        ValueError: fewer than two bars fall inside the window
    """
    ordered = sorted(bars, key=lambda bar: bar.date)
    if not ordered:
        raise ValueError(f"{symbol} {days}d: no bars")

    end_date = ordered[-1].date
    start_date = end_date - timedelta(days=days)
    window = [bar for bar in ordered if start_date <= bar.date <= end_date]
    if len(window) < 2:
        raise ValueError(f"{symbol} {days}d: not enough bars")

    closes = [bar.close for bar in window]
    start, end = closes[0], closes[-1]
    return {
        "start_price": start,
        "end_price": end,
        "return_pct": round((end / start - 1.0) * 100.0, 2) if start else 0.0,
        "volatility_pct": round(annualized_volatility(closes), 2),
        "sharpe": round(sharpe_ratio(closes), 2),
        "max_drawdown_pct": round(max_drawdown_pct(closes), 2),
        "top_price": max(bar.high if bar.high is not None else bar.close for bar in window),
    }


def _month_change_pct(bars_newest_first: Sequence[PriceBar], year: int, month: int) -> float:
    in_month = [bar for bar in bars_newest_first if bar.date.year == year and bar.date.month == month]
    if len(in_month) < 2:
        return 0.0
    newest, oldest = in_month[0].close, in_month[-1].close
    if oldest <= 0:
        return 0.0
    return (newest - oldest) / oldest * 100.0


def build_quote_from_bars(
    symbol: str,
    bars: Sequence[PriceBar],
    source: str,
    as_of: Optional[datetime] = None,
    market_cap: float = 0.0,
) -> PriceQuote:
    """
    Reduce daily history to a PriceQuote.

    Highs are taken over the newest 30/60 closes. Month changes compare the
    oldest and newest close inside the calendar month of `as_of` and the
    month before it.

    Raises:
        ValueError: no bars supplied
    """
    if not bars:
        raise ValueError(f"No price data available for {symbol}")

    as_of = as_of or datetime.now(timezone.utc)
    newest_first = sorted(bars, key=lambda bar: bar.date, reverse=True)
    current = newest_first[0].close

    high_30d = max(bar.close for bar in newest_first[:30])
    high_60d = max(bar.close for bar in newest_first[:60])

    if as_of.month == 1:
        last_year, last_month = as_of.year - 1, 12
    else:
        last_year, last_month = as_of.year, as_of.month - 1

    closes = [bar.close for bar in reversed(newest_first)]

    return PriceQuote(
        symbol=symbol.upper(),
        price=current,
        high_30d=high_30d,
        high_60d=high_60d,
        this_month_pct=_month_change_pct(newest_first, as_of.year, as_of.month),
        last_month_pct=_month_change_pct(newest_first, last_year, last_month),
        volatility=annualized_volatility(closes) / 100.0,
        market_cap=market_cap,
        fetched_at=as_of,
        source=source,
    )


__all__ = [
    "annualized_volatility",
    "build_quote_from_bars",
    "classify_volatility",
    "confidence_score",
    "log_returns",
    "max_drawdown_pct",
    "portfolio_volatility",
    "sharpe_ratio",
    "volatility_metrics",
    "window_metrics",
]
