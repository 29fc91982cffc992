"""
portfolio-signals Core: Data Model

Shared records passed between the gateway, analytics, decision and risk
engines, and the refresh orchestrator.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Action(Enum):
    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class SignalColor(Enum):
    RED = "red"
    GREEN = "green"
    YELLOW = "yellow"


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class ErrorKind(Enum):
    """Why a quote lookup produced no fresh data."""
    TRANSIENT = "transient"  # timeout, 5xx, malformed payload
    PROVIDER_REJECTED = "provider_rejected"  # non-retryable 4xx
    CIRCUIT_OPEN = "circuit_open"
    EXHAUSTED = "exhausted"
    NOT_CONFIGURED = "not_configured"


class VolatilityRiskLevel(Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    EXTREME = "Extreme"


class AlertType(Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    POSITION_SIZE = "POSITION_SIZE"
    PORTFOLIO_RISK = "PORTFOLIO_RISK"
    MARKET_CONDITION = "MARKET_CONDITION"


class RiskSeverity(Enum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name

    @classmethod
    def worst(cls, levels) -> "RiskSeverity":
        levels = list(levels)
        if not levels:
            return cls.LOW
        return max(levels, key=lambda level: level.value)


class RecommendedAction(Enum):
    SELL = "SELL"
    HOLD = "HOLD"
    REDUCE = "REDUCE"
    MONITOR = "MONITOR"


@dataclass(frozen=True)
class PriceBar:
    """One daily bar of price history."""
    date: date
    close: float
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: Optional[float] = None


@dataclass(frozen=True)
class PriceQuote:
    """
    Point-in-time snapshot for one ticker.

    Built only by the gateway. A newer fetch replaces the quote, it is never
    mutated. `volatility` is annualized and expressed as a decimal fraction.
    """
    symbol: str
    price: float
    high_30d: float
    high_60d: float
    this_month_pct: float
    last_month_pct: float
    volatility: float
    market_cap: float
    fetched_at: datetime
    source: str = ""
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fetched_at"] = self.fetched_at.isoformat()
        return data


@dataclass
class QuoteResult:
    """Outcome of a single-symbol gateway lookup."""
    symbol: str
    quote: Optional[PriceQuote] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.quote is not None

    @property
    def stale(self) -> bool:
        return bool(self.quote and self.quote.stale)


@dataclass
class Position:
    """A single ticker holding inside one user's portfolio."""
    position_id: str
    user_id: str
    portfolio_id: str
    ticker: str
    entry_price: float
    current_price: float
    shares: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    action: Action = Action.HOLD
    reason: str = ""
    color: SignalColor = SignalColor.YELLOW

    @property
    def market_value(self) -> float:
        return self.current_price * self.shares

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["color"] = self.color.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        payload = dict(data)
        payload["action"] = Action(payload.get("action") or Action.HOLD.value)
        payload["color"] = SignalColor(payload.get("color") or SignalColor.YELLOW.value)
        payload["ticker"] = str(payload["ticker"]).upper()
        return cls(**payload)


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    color: SignalColor
    score: Optional[int] = None


@dataclass(frozen=True)
class VolatilityMetrics:
    symbol: str
    annualized_pct: float
    daily_pct: float
    monthly_pct: float
    risk_level: VolatilityRiskLevel
    confidence: float


@dataclass(frozen=True)
class PortfolioVolatility:
    weighted_volatility: float
    average_volatility: float
    diversification_ratio: float
    concentration_risk: float
    weights: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class RiskAlert:
    alert_type: AlertType
    severity: RiskSeverity
    message: str
    recommended_action: RecommendedAction
    ticker: Optional[str] = None
    portfolio_id: Optional[str] = None
    current_price: Optional[float] = None
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.value,
            "severity": self.severity.name,
            "message": self.message,
            "action": self.recommended_action.value,
            "ticker": self.ticker,
            "portfolio_id": self.portfolio_id,
            "current_price": self.current_price,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PositionRisk:
    ticker: str
    current_price: float
    entry_price: float
    shares: float
    position_value: float
    portfolio_pct: float
    risk_level: RiskSeverity
    risk_score: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    alerts: List[RiskAlert] = field(default_factory=list)


@dataclass
class PortfolioRisk:
    portfolio_id: Optional[str]
    total_value: float
    total_risk: float
    risk_level: RiskSeverity
    position_risks: List[PositionRisk] = field(default_factory=list)
    portfolio_alerts: List[RiskAlert] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def all_alerts(self) -> List[RiskAlert]:
        alerts: List[RiskAlert] = []
        for position_risk in self.position_risks:
            alerts.extend(position_risk.alerts)
        alerts.extend(self.portfolio_alerts)
        return alerts
