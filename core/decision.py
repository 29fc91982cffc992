"""
portfolio-signals Core: Decision Engine

Rules-based BUY/HOLD/SELL for a position given its latest quote.

Hard exits first (stop loss, take profit), then a small additive score over
momentum and entry-relative signals. Pure and deterministic.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from core.models import Action, Decision, Position, PriceQuote, SignalColor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionThresholds:
    strong_vs_high: float = 0.9
    weak_vs_high: float = 0.7
    month_move_pct: float = 10.0
    buy_score: int = 2
    sell_score: int = -2

    @classmethod
    def from_policy(cls, policy: Optional[dict]) -> "DecisionThresholds":
        cfg = (policy or {}).get("decision", {}) or {}
        return cls(
            strong_vs_high=float(cfg.get("strong_vs_high", cls.strong_vs_high)),
            weak_vs_high=float(cfg.get("weak_vs_high", cls.weak_vs_high)),
            month_move_pct=float(cfg.get("month_move_pct", cls.month_move_pct)),
            buy_score=int(cfg.get("buy_score", cls.buy_score)),
            sell_score=int(cfg.get("sell_score", cls.sell_score)),
        )


class DecisionEngine:
    """
    Turns (position, quote) into a Decision.

    Stop loss / take profit of 0 or None mean "not set".
    """

    def __init__(self, thresholds: Optional[DecisionThresholds] = None):
        self.thresholds = thresholds or DecisionThresholds()

    def decide(self, position: Position, quote: PriceQuote) -> Decision:
        price = quote.price
        t = self.thresholds

        if position.stop_loss and price <= position.stop_loss:
            return Decision(Action.SELL, "stop loss triggered", SignalColor.RED)

        if position.take_profit and price >= position.take_profit:
            return Decision(Action.SELL, "take profit reached", SignalColor.GREEN)

        score = 0
        reasons: List[str] = []

        if quote.high_60d > 0:
            ratio = price / quote.high_60d
            if ratio > t.strong_vs_high:
                score += 1
                reasons.append("strong vs 60-day high")
            elif ratio < t.weak_vs_high:
                score -= 1
                reasons.append("weak vs 60-day high")

        for label, pct in (("this month", quote.this_month_pct), ("last month", quote.last_month_pct)):
            if pct > t.month_move_pct:
                score += 1
                reasons.append(f"strong {label}")
            elif pct < -t.month_move_pct:
                score -= 1
                reasons.append(f"weak {label}")

        if price > position.entry_price:
            score += 1
            reasons.append("above entry")
        else:
            score -= 1
            reasons.append("below entry")

        reason = ", ".join(reasons) if reasons else "neutral signals"
        if score >= t.buy_score:
            return Decision(Action.BUY, reason, SignalColor.GREEN, score)
        if score <= t.sell_score:
            return Decision(Action.SELL, reason, SignalColor.RED, score)
        return Decision(Action.HOLD, reason, SignalColor.YELLOW, score)

    def decide_many(self, pairs: Iterable[Tuple[Position, PriceQuote]]) -> List[Decision]:
        return [self.decide(position, quote) for position, quote in pairs]
