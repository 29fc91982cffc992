"""
portfolio-signals Runner: Refresh Orchestrator

Job bodies driven by the scheduler (and by interactive triggers):
Gateway -> Analytics -> Decision/Risk engines -> PositionStore -> notify.

Writes are idempotent: a position is only rewritten when its price or
decision changed, and a notification fires only when the action changed.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from core.analytics import portfolio_volatility, volatility_metrics
from core.decision import DecisionEngine
from core.gateway import MarketDataGateway
from core.models import Action, Position, PortfolioRisk, RiskSeverity
from core.risk import RiskEngine
from infra.alerting import AlertSeverity
from infra.history_store import PriceHistoryStore
from infra.state_store import PositionStore

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, Action, str], None]


@dataclass
class QuoteRefreshSummary:
    symbols: int = 0
    fetched: int = 0
    stale: List[str] = field(default_factory=list)
    positions_updated: int = 0
    missing: List[str] = field(default_factory=list)


@dataclass
class DecisionRefreshSummary:
    users: int = 0
    positions: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_no_quote: int = 0
    stale: List[str] = field(default_factory=list)
    notifications: int = 0
    notification_failures: int = 0


@dataclass
class RiskRefreshSummary:
    portfolios: int = 0
    alerts: int = 0
    critical_portfolios: int = 0
    warnings: int = 0


@dataclass
class VolatilityRefreshSummary:
    portfolios: int = 0
    symbols: int = 0
    missing: int = 0


@dataclass
class BackfillSummary:
    symbols: int = 0
    bars_stored: int = 0
    failed: List[str] = field(default_factory=list)


def _noop_notify(user_id: str, ticker: str, action: Action, reason: str) -> None:
    logger.debug("No notifier configured; %s %s -> %s (%s)", user_id, ticker, action.value, reason)


class RefreshOrchestrator:
    def __init__(
        self,
        gateway: MarketDataGateway,
        store: PositionStore,
        decision_engine: Optional[DecisionEngine] = None,
        risk_engine: Optional[RiskEngine] = None,
        notify: Optional[Notifier] = None,
        history_store: Optional[PriceHistoryStore] = None,
        alerts=None,
        metrics=None,
        history_days: int = 90,
    ):
        self.gateway = gateway
        self.store = store
        self.decision_engine = decision_engine or DecisionEngine()
        self.risk_engine = risk_engine or RiskEngine()
        self.notify = notify or _noop_notify
        self.history_store = history_store
        self.alerts = alerts
        self.metrics = metrics
        self.history_days = history_days

        self.latest_risk: Dict[Tuple[str, str], PortfolioRisk] = {}

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def refresh_quotes(self) -> QuoteRefreshSummary:
        symbols = self.store.all_symbols()
        summary = QuoteRefreshSummary(symbols=len(symbols))
        if not symbols:
            return summary

        quotes = self.gateway.fetch_quotes(symbols)
        summary.fetched = len(quotes)
        summary.stale = [symbol for symbol, quote in quotes.items() if quote.stale]
        summary.missing = [symbol for symbol in symbols if symbol not in quotes]

        updates = {
            position.position_id: {"current_price": quotes[position.ticker].price}
            for position in self.store.list_positions()
            if position.ticker in quotes and position.current_price != quotes[position.ticker].price
        }
        self.store.update_positions(updates)
        summary.positions_updated = len(updates)

        if summary.missing:
            logger.warning("Quote refresh missing %d symbol(s): %s", len(summary.missing), summary.missing)
        if summary.stale:
            logger.warning("Quote refresh served %d stale price(s): %s", len(summary.stale), summary.stale)
        return summary

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def refresh_decisions(self, user_id: Optional[str] = None) -> DecisionRefreshSummary:
        """
        Recompute decisions for every position (or one user's).

        Quotes are fetched once per owner for the owner's distinct tickers.
        """
        by_user: Dict[str, List[Position]] = defaultdict(list)
        for position in self.store.list_positions(user_id=user_id):
            by_user[position.user_id].append(position)

        summary = DecisionRefreshSummary(users=len(by_user))
        for owner, positions in by_user.items():
            self._refresh_user_decisions(owner, positions, summary)

        logger.info(
            "Decision refresh: %d users, %d positions, %d updated, %d notified, %d without quote",
            summary.users,
            summary.positions,
            summary.updated,
            summary.notifications,
            summary.skipped_no_quote,
        )
        return summary

    def _refresh_user_decisions(self, user_id: str, positions: List[Position], summary: DecisionRefreshSummary) -> None:
        tickers = sorted({position.ticker for position in positions})
        quotes = self.gateway.fetch_quotes(tickers)
        for ticker, quote in quotes.items():
            if quote.stale and ticker not in summary.stale:
                summary.stale.append(ticker)

        updates: Dict[str, Dict[str, object]] = {}
        changed_actions: List[Tuple[Position, Action, str]] = []

        for position in positions:
            summary.positions += 1
            quote = quotes.get(position.ticker)
            if quote is None:
                summary.skipped_no_quote += 1
                continue

            decision = self.decision_engine.decide(position, quote)
            changes: Dict[str, object] = {}
            if position.current_price != quote.price:
                changes["current_price"] = quote.price
            if position.action is not decision.action:
                changes["action"] = decision.action
            if position.reason != decision.reason:
                changes["reason"] = decision.reason
            if position.color is not decision.color:
                changes["color"] = decision.color

            if not changes:
                summary.unchanged += 1
                continue

            updates[position.position_id] = changes
            if "action" in changes:
                changed_actions.append((position, decision.action, decision.reason))

        self.store.update_positions(updates)
        summary.updated += len(updates)

        for position, action, reason in changed_actions:
            logger.info(
                "%s/%s action %s -> %s (%s)",
                user_id, position.ticker, position.action.value, action.value, reason,
            )
            if self.metrics:
                self.metrics.record_decision_change(action.value)
            if self._send_notification(user_id, position.ticker, action, reason):
                summary.notifications += 1
            else:
                summary.notification_failures += 1

    def _send_notification(self, user_id: str, ticker: str, action: Action, reason: str) -> bool:
        try:
            self.notify(user_id, ticker, action, reason)
        except Exception as exc:
            logger.error("Notification for %s/%s failed: %s", user_id, ticker, exc, exc_info=True)
            if self.metrics:
                self.metrics.record_notification("failed")
            return False
        if self.metrics:
            self.metrics.record_notification("sent")
        return True

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def _portfolio_groups(self) -> Dict[Tuple[str, str], List[Position]]:
        groups: Dict[Tuple[str, str], List[Position]] = defaultdict(list)
        for position in self.store.list_positions():
            groups[(position.user_id, position.portfolio_id)].append(position)
        return groups

    def refresh_risk(self) -> RiskRefreshSummary:
        groups = self._portfolio_groups()
        summary = RiskRefreshSummary(portfolios=len(groups))
        if not groups:
            self.latest_risk = {}
            return summary

        quotes = self.gateway.fetch_quotes(self.store.all_symbols())
        latest: Dict[Tuple[str, str], PortfolioRisk] = {}

        for (user_id, portfolio_id), positions in groups.items():
            risk = self.risk_engine.analyze_portfolio(positions, quotes, portfolio_id=portfolio_id)
            latest[(user_id, portfolio_id)] = risk
            summary.alerts += len(risk.all_alerts())
            summary.warnings += len(risk.warnings)

            if risk.risk_level is RiskSeverity.CRITICAL:
                summary.critical_portfolios += 1
                logger.warning(
                    "Portfolio %s/%s risk CRITICAL (score %.1f)", user_id, portfolio_id, risk.total_risk
                )
                if self.alerts:
                    self.alerts.notify(
                        AlertSeverity.CRITICAL,
                        f"Critical portfolio risk: {user_id}/{portfolio_id}",
                        f"Weighted risk {risk.total_risk:.1f}; {len(risk.all_alerts())} alert(s)",
                        {"user_id": user_id, "portfolio_id": portfolio_id},
                    )

        self.latest_risk = latest
        return summary

    # ------------------------------------------------------------------
    # Daily jobs
    # ------------------------------------------------------------------

    def recompute_volatility(self) -> VolatilityRefreshSummary:
        groups = self._portfolio_groups()
        symbols = self.store.all_symbols()
        summary = VolatilityRefreshSummary(portfolios=len(groups), symbols=len(symbols))
        if not groups:
            return summary

        quotes = self.gateway.fetch_quotes(symbols)
        summary.missing = len([symbol for symbol in symbols if symbol not in quotes])
        now = datetime.now(timezone.utc)

        for (user_id, portfolio_id), positions in groups.items():
            holdings = []
            per_symbol = {}
            for position in positions:
                quote = quotes.get(position.ticker)
                if quote is None:
                    continue
                metrics = volatility_metrics(quote, now=now)
                holdings.append((metrics.annualized_pct, quote.price * position.shares))
                per_symbol[position.ticker] = {
                    "annualized_pct": metrics.annualized_pct,
                    "risk_level": metrics.risk_level.value,
                    "confidence": metrics.confidence,
                }

            result = portfolio_volatility(holdings)
            self.store.save_portfolio_metrics(
                user_id,
                portfolio_id,
                {"volatility": asdict(result), "positions": per_symbol},
            )

        return summary

    def backfill_history(self) -> BackfillSummary:
        symbols = self.store.all_symbols()
        summary = BackfillSummary(symbols=len(symbols))
        if self.history_store is None:
            logger.info("History backfill skipped: no history store configured")
            return summary

        for symbol in symbols:
            bars = self.gateway.fetch_history(symbol, self.history_days)
            if not bars:
                summary.failed.append(symbol)
                continue
            summary.bars_stored += self.history_store.upsert_bars(symbol, bars)

        if summary.failed:
            logger.warning("History backfill failed for %s", summary.failed)
        return summary
