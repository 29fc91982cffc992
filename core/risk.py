"""
portfolio-signals Core: Risk Engine

Position and portfolio risk scoring with alerting.

The per-position risk level comes from its own stop-distance/momentum
heuristic, which intentionally uses different thresholds from the Decision
Engine. CRITICAL is reserved for a stop-loss breach.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging

from core.analytics import volatility_metrics
from core.models import (
    AlertType,
    PortfolioRisk,
    Position,
    PositionRisk,
    PriceQuote,
    RecommendedAction,
    RiskAlert,
    RiskSeverity,
    VolatilityMetrics,
    VolatilityRiskLevel,
)

logger = logging.getLogger(__name__)

BASE_RISK_SCORE = {
    RiskSeverity.CRITICAL: 90,
    RiskSeverity.HIGH: 70,
    RiskSeverity.MEDIUM: 40,
    RiskSeverity.LOW: 20,
}


@dataclass(frozen=True)
class RiskAssessment:
    """Outcome of the per-position heuristic."""
    action: str  # BUY / HOLD / SELL / MONITOR
    reason: str
    risk_level: RiskSeverity
    score: Optional[int] = None


class RiskEngine:
    """
    Scores positions and portfolios and emits RiskAlerts.

    Thresholds come from the `risk` section of policy.yaml; percentages are
    of portfolio value.
    """

    def __init__(self, policy: Optional[Dict] = None):
        self.policy = policy or {}
        self.risk_config = self.policy.get("risk", {}) or {}

        self.position_warn_pct = float(self.risk_config.get("position_warn_pct", 15.0))
        self.position_max_pct = float(self.risk_config.get("position_max_pct", 20.0))
        self.concentration_pct = float(self.risk_config.get("concentration_pct", 30.0))
        self.take_profit_zone = float(self.risk_config.get("take_profit_zone", 0.95))
        self.take_profit_watch = float(self.risk_config.get("take_profit_watch", 0.90))

        logger.info(
            "Initialized RiskEngine (position warn/max %.0f%%/%.0f%%, concentration %.0f%%)",
            self.position_warn_pct,
            self.position_max_pct,
            self.concentration_pct,
        )

    # ------------------------------------------------------------------
    # Position heuristic
    # ------------------------------------------------------------------

    def assess(self, position: Position, quote: Optional[PriceQuote] = None) -> RiskAssessment:
        price = quote.price if quote else position.current_price
        stop = position.stop_loss

        if not price or not stop:
            return RiskAssessment("HOLD", "missing stop loss or price", RiskSeverity.MEDIUM)

        if price <= stop:
            return RiskAssessment("SELL", f"stop loss hit at {stop:.2f}", RiskSeverity.CRITICAL)

        target = position.take_profit
        if target:
            if price >= target * self.take_profit_zone:
                return RiskAssessment("SELL", f"take profit zone reached ({target:.2f})", RiskSeverity.HIGH)
            if price >= target * self.take_profit_watch:
                return RiskAssessment("MONITOR", f"approaching take profit ({target:.2f})", RiskSeverity.MEDIUM)

        score = 0
        level = RiskSeverity.LOW

        if quote is not None:
            if quote.high_60d > 0:
                if price >= quote.high_60d * 0.90:
                    score += 1
                if price <= quote.high_60d * 0.70:
                    score -= 1
            for pct in (quote.this_month_pct, quote.last_month_pct):
                if pct >= 10:
                    score += 1
                if pct <= -10:
                    score -= 1

        entry = position.entry_price
        if entry:
            if price > entry:
                score += 1
            if price < entry * 0.90:
                score -= 1

        stop_distance_pct = (price - stop) / price * 100.0
        if stop_distance_pct < 5:
            score -= 2
            level = RiskSeverity.HIGH
        elif stop_distance_pct < 10:
            score -= 1
            level = RiskSeverity.MEDIUM

        if score >= 2:
            return RiskAssessment("BUY", f"strong position (score {score})", RiskSeverity.LOW, score)
        if score <= -2:
            return RiskAssessment("SELL", f"weak position (score {score})", RiskSeverity.HIGH, score)
        if score <= -1:
            level = RiskSeverity.worst([level, RiskSeverity.MEDIUM])
        return RiskAssessment("HOLD", f"neutral position (score {score})", level, score)

    # ------------------------------------------------------------------
    # Position / portfolio analysis
    # ------------------------------------------------------------------

    def analyze_position(
        self,
        position: Position,
        portfolio_value: float,
        quote: Optional[PriceQuote] = None,
        volatility: Optional[VolatilityMetrics] = None,
    ) -> PositionRisk:
        price = quote.price if quote else position.current_price
        position_value = price * position.shares
        weight_pct = (position_value / portfolio_value * 100.0) if portfolio_value > 0 else 0.0

        assessment = self.assess(position, quote)
        alerts: List[RiskAlert] = []

        def _alert(alert_type, severity, message, action, **context) -> None:
            alerts.append(
                RiskAlert(
                    alert_type=alert_type,
                    severity=severity,
                    message=message,
                    recommended_action=action,
                    ticker=position.ticker,
                    portfolio_id=position.portfolio_id,
                    current_price=price,
                    **context,
                )
            )

        if position.stop_loss and price <= position.stop_loss:
            _alert(
                AlertType.STOP_LOSS,
                RiskSeverity.CRITICAL,
                f"{position.ticker} hit stop loss at {position.stop_loss:.2f}",
                RecommendedAction.SELL,
                entry_price=position.entry_price,
                stop_loss=position.stop_loss,
            )

        if position.take_profit and price >= position.take_profit * self.take_profit_watch:
            if price >= position.take_profit * self.take_profit_zone:
                severity, action, verb = RiskSeverity.HIGH, RecommendedAction.SELL, "reached"
            else:
                severity, action, verb = RiskSeverity.MEDIUM, RecommendedAction.MONITOR, "is approaching"
            _alert(
                AlertType.TAKE_PROFIT,
                severity,
                f"{position.ticker} {verb} take profit zone ({position.take_profit:.2f})",
                action,
                entry_price=position.entry_price,
                take_profit=position.take_profit,
            )

        if weight_pct > self.position_max_pct:
            _alert(
                AlertType.POSITION_SIZE,
                RiskSeverity.HIGH,
                f"{position.ticker} is {weight_pct:.1f}% of portfolio - consider reducing",
                RecommendedAction.REDUCE,
            )
        elif weight_pct > self.position_warn_pct:
            _alert(
                AlertType.POSITION_SIZE,
                RiskSeverity.MEDIUM,
                f"{position.ticker} is {weight_pct:.1f}% of portfolio - monitor closely",
                RecommendedAction.MONITOR,
            )

        if volatility is not None and volatility.risk_level is VolatilityRiskLevel.EXTREME:
            _alert(
                AlertType.MARKET_CONDITION,
                RiskSeverity.MEDIUM,
                f"{position.ticker} volatility is extreme ({volatility.annualized_pct:.1f}% annualized)",
                RecommendedAction.MONITOR,
            )

        if quote is not None and quote.stale:
            _alert(
                AlertType.MARKET_CONDITION,
                RiskSeverity.LOW,
                f"{position.ticker} price data is stale (source {quote.source or 'cache'})",
                RecommendedAction.MONITOR,
            )

        risk_score = BASE_RISK_SCORE[assessment.risk_level]
        if weight_pct > self.position_max_pct:
            risk_score += 20
        elif weight_pct > self.position_warn_pct:
            risk_score += 10

        return PositionRisk(
            ticker=position.ticker,
            current_price=price,
            entry_price=position.entry_price,
            shares=position.shares,
            position_value=position_value,
            portfolio_pct=weight_pct,
            risk_level=assessment.risk_level,
            risk_score=min(risk_score, 100),
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            alerts=alerts,
        )

    def analyze_portfolio(
        self,
        positions: Iterable[Position],
        quotes: Dict[str, PriceQuote],
        portfolio_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PortfolioRisk:
        """
        Aggregate risk for one portfolio.

        Positions without a quote are excluded from value and scores and
        reported in `warnings`; the analysis always completes.
        """
        positions = list(positions)
        if portfolio_id is None and positions:
            portfolio_id = positions[0].portfolio_id

        priced: List[tuple] = []
        warnings: List[str] = []
        for position in positions:
            quote = quotes.get(position.ticker.upper())
            if quote is None:
                warnings.append(f"{position.ticker}: no market data, excluded from risk aggregates")
                continue
            priced.append((position, quote))

        if warnings:
            logger.warning("Portfolio %s risk analysis skipped %d position(s)", portfolio_id, len(warnings))

        total_value = sum(quote.price * position.shares for position, quote in priced)
        position_risks = [
            self.analyze_position(position, total_value, quote, volatility_metrics(quote, now=now))
            for position, quote in priced
        ]

        total_risk = sum(pr.risk_score * pr.portfolio_pct / 100.0 for pr in position_risks)
        portfolio_alerts: List[RiskAlert] = []

        threshold_level = RiskSeverity.LOW
        if total_risk > 80:
            threshold_level = RiskSeverity.CRITICAL
            message, action = "immediate action required", RecommendedAction.REDUCE
        elif total_risk > 60:
            threshold_level = RiskSeverity.HIGH
            message, action = "consider reducing positions", RecommendedAction.MONITOR
        elif total_risk > 40:
            threshold_level = RiskSeverity.MEDIUM
            message, action = "monitor closely", RecommendedAction.MONITOR

        if threshold_level is not RiskSeverity.LOW:
            portfolio_alerts.append(
                RiskAlert(
                    alert_type=AlertType.PORTFOLIO_RISK,
                    severity=threshold_level,
                    message=f"Portfolio risk is {threshold_level.name} ({total_risk:.1f}) - {message}",
                    recommended_action=action,
                    portfolio_id=portfolio_id,
                )
            )

        if position_risks:
            largest = max(position_risks, key=lambda pr: pr.portfolio_pct)
            if largest.portfolio_pct > self.concentration_pct:
                portfolio_alerts.append(
                    RiskAlert(
                        alert_type=AlertType.POSITION_SIZE,
                        severity=RiskSeverity.HIGH,
                        message=f"Portfolio has {largest.portfolio_pct:.1f}% concentration in {largest.ticker}",
                        recommended_action=RecommendedAction.REDUCE,
                        ticker=largest.ticker,
                        portfolio_id=portfolio_id,
                    )
                )

        result = PortfolioRisk(
            portfolio_id=portfolio_id,
            total_value=total_value,
            total_risk=total_risk,
            risk_level=threshold_level,
            position_risks=position_risks,
            portfolio_alerts=portfolio_alerts,
            warnings=warnings,
        )
        result.risk_level = RiskSeverity.worst(
            [threshold_level] + [alert.severity for alert in result.all_alerts()]
        )
        return result

    @staticmethod
    def collect_alerts(portfolio_risks: Iterable[PortfolioRisk]) -> List[RiskAlert]:
        """All alerts across portfolios, most severe first, newest first within a severity."""
        alerts: List[RiskAlert] = []
        for portfolio_risk in portfolio_risks:
            alerts.extend(portfolio_risk.all_alerts())
        return sorted(alerts, key=lambda a: (a.severity.value, a.timestamp), reverse=True)

    @staticmethod
    def group_by_portfolio(positions: Iterable[Position]) -> Dict[str, List[Position]]:
        grouped: Dict[str, List[Position]] = defaultdict(list)
        for position in positions:
            grouped[position.portfolio_id].append(position)
        return dict(grouped)
