"""
Tests for the refresh job bodies: idempotent decision writes, notification
isolation, risk alerts, volatility metrics and history backfill.
"""
from unittest import mock

import pytest

from core.exceptions import ProviderError
from core.gateway import MarketDataGateway
from core.models import Action, RiskSeverity, SignalColor
from infra.alerting import AlertSeverity
from infra.history_store import PriceHistoryStore
from infra.state_store import PositionStore
from runner.orchestrator import RefreshOrchestrator
from tests.helpers import RecordingNotifier, StubProvider, make_bars, make_position, make_quote, recording_alerts


class PriceBook(StubProvider):
    """Quotes from a symbol -> PriceQuote map; unknown symbols are rejected."""

    def __init__(self, quotes):
        super().__init__("book")
        self.quotes = dict(quotes)

    def quote(self, symbol, days=90):
        self.calls.append(symbol)
        if symbol not in self.quotes:
            raise ProviderError(self.name, "unknown symbol", retryable=False, status_code=404)
        return self.quotes[symbol]


BULLISH = make_quote("AAPL", 150.0, high_60d=160.0, this_month_pct=15.0, last_month_pct=12.0)


@pytest.fixture
def store(tmp_path):
    return PositionStore(str(tmp_path / "positions.json"))


def build(store, clock, quotes, **kwargs):
    provider = PriceBook(quotes)
    gateway = MarketDataGateway([provider], clock=clock, sleep=clock.sleep, retry_attempts=1)
    return RefreshOrchestrator(gateway, store, **kwargs), provider


class TestRefreshDecisions:
    def test_changed_action_is_written_and_notified(self, store, clock):
        store.add_position(make_position("AAPL", entry_price=100.0))
        notifier = RecordingNotifier()
        orchestrator, _ = build(store, clock, {"AAPL": BULLISH}, notify=notifier)

        summary = orchestrator.refresh_decisions()

        assert summary.updated == 1
        assert summary.notifications == 1
        assert notifier.calls == [
            ("u1", "AAPL", Action.BUY, "strong vs 60-day high, strong this month, strong last month, above entry")
        ]
        saved = store.get_position("u1-p1-AAPL")
        assert saved.action is Action.BUY
        assert saved.color is SignalColor.GREEN
        assert saved.current_price == 150.0

    def test_second_run_is_a_no_op(self, store, clock):
        store.add_position(make_position("AAPL", entry_price=100.0))
        notifier = RecordingNotifier()
        orchestrator, _ = build(store, clock, {"AAPL": BULLISH}, notify=notifier)

        orchestrator.refresh_decisions()
        second = orchestrator.refresh_decisions()

        assert second.updated == 0
        assert second.unchanged == 1
        assert second.notifications == 0
        assert len(notifier.calls) == 1

    def test_price_only_change_does_not_notify(self, store, clock):
        store.add_position(
            make_position(
                "AAPL",
                entry_price=100.0,
                current_price=149.0,
                action=Action.BUY,
                color=SignalColor.GREEN,
                reason="strong vs 60-day high, strong this month, strong last month, above entry",
            )
        )
        notifier = RecordingNotifier()
        orchestrator, _ = build(store, clock, {"AAPL": BULLISH}, notify=notifier)

        summary = orchestrator.refresh_decisions()

        assert summary.updated == 1
        assert notifier.calls == []
        assert store.get_position("u1-p1-AAPL").current_price == 150.0

    def test_notifier_failure_does_not_abort_batch(self, store, clock):
        store.add_position(make_position("AAPL", entry_price=100.0))
        store.add_position(make_position("MSFT", entry_price=100.0))
        notifier = RecordingNotifier(fail_with=RuntimeError("push gateway down"))
        metrics = mock.Mock()
        quotes = {"AAPL": BULLISH, "MSFT": make_quote("MSFT", 150.0, high_60d=160.0, this_month_pct=15.0)}
        orchestrator, _ = build(store, clock, quotes, notify=notifier, metrics=metrics)

        summary = orchestrator.refresh_decisions()

        assert len(notifier.calls) == 2
        assert summary.notification_failures == 2
        assert summary.updated == 2
        assert store.get_position("u1-p1-MSFT").action is Action.BUY
        metrics.record_notification.assert_called_with("failed")

    def test_position_without_quote_is_skipped(self, store, clock):
        store.add_position(make_position("AAPL", entry_price=100.0))
        store.add_position(make_position("GONE", entry_price=10.0))
        orchestrator, _ = build(store, clock, {"AAPL": BULLISH})

        summary = orchestrator.refresh_decisions()

        assert summary.skipped_no_quote == 1
        assert store.get_position("u1-p1-GONE").action is Action.HOLD

    def test_quotes_fetched_once_per_user_ticker(self, store, clock):
        store.add_position(make_position("AAPL", portfolio_id="p1"))
        store.add_position(make_position("AAPL", portfolio_id="p2"))
        orchestrator, provider = build(store, clock, {"AAPL": BULLISH})

        orchestrator.refresh_decisions()

        assert provider.calls == ["AAPL"]

    def test_single_user_refresh(self, store, clock):
        store.add_position(make_position("AAPL", user_id="u1"))
        store.add_position(make_position("AAPL", user_id="u2"))
        orchestrator, _ = build(store, clock, {"AAPL": BULLISH})

        summary = orchestrator.refresh_decisions(user_id="u2")

        assert summary.users == 1
        assert store.get_position("u1-p1-AAPL").action is Action.HOLD
        assert store.get_position("u2-p1-AAPL").action is Action.BUY


def test_refresh_quotes_writes_changed_prices(store, clock):
    store.add_position(make_position("AAPL", entry_price=100.0))
    store.add_position(make_position("MSFT", entry_price=50.0, current_price=50.0))
    store.add_position(make_position("GONE", entry_price=10.0))
    orchestrator, _ = build(store, clock, {"AAPL": make_quote("AAPL", 101.0), "MSFT": make_quote("MSFT", 50.0)})

    summary = orchestrator.refresh_quotes()

    assert summary.symbols == 3
    assert summary.fetched == 2
    assert summary.missing == ["GONE"]
    assert summary.positions_updated == 1
    assert store.get_position("u1-p1-AAPL").current_price == 101.0


def test_refresh_quotes_lists_stale_symbols(store, clock):
    store.add_position(make_position("AAPL", entry_price=100.0))
    store.add_position(make_position("MSFT", entry_price=50.0))
    orchestrator, provider = build(store, clock, {"AAPL": make_quote("AAPL", 101.0), "MSFT": make_quote("MSFT", 52.0)})
    assert orchestrator.refresh_quotes().stale == []

    del provider.quotes["MSFT"]
    clock.advance(25)
    summary = orchestrator.refresh_quotes()

    assert summary.stale == ["MSFT"]
    assert summary.missing == []
    assert store.get_position("u1-p1-MSFT").current_price == 52.0


class TestRefreshRisk:
    def test_critical_portfolio_raises_alert(self, store, clock):
        store.add_position(make_position("TSLA", entry_price=80.0, shares=1, stop_loss=60.0))
        store.add_position(make_position("AAPL", shares=1, stop_loss=50.0, portfolio_id="p2"))
        alerts = recording_alerts()
        quotes = {"TSLA": make_quote("TSLA", 50.0), "AAPL": make_quote("AAPL", 100.0)}
        orchestrator, _ = build(store, clock, quotes, alerts=alerts)

        summary = orchestrator.refresh_risk()

        assert summary.portfolios == 2
        assert summary.critical_portfolios == 1
        assert orchestrator.latest_risk[("u1", "p1")].risk_level is RiskSeverity.CRITICAL
        assert orchestrator.latest_risk[("u1", "p2")].risk_level is not RiskSeverity.CRITICAL

        sent = alerts.history()
        assert [a.severity for a in sent] == [AlertSeverity.CRITICAL]
        assert sent[0].title == "Critical portfolio risk: u1/p1"

    def test_empty_store_clears_latest(self, store, clock):
        orchestrator, _ = build(store, clock, {})
        orchestrator.latest_risk = {("u1", "p1"): object()}

        assert orchestrator.refresh_risk().portfolios == 0
        assert orchestrator.latest_risk == {}


def test_recompute_volatility_persists_metrics(store, clock):
    store.add_position(make_position("AAPL", shares=10))
    store.add_position(make_position("MSFT", shares=10))
    store.add_position(make_position("GONE", shares=10))
    quotes = {"AAPL": make_quote("AAPL", 100.0, volatility=0.2), "MSFT": make_quote("MSFT", 100.0, volatility=0.4)}
    orchestrator, _ = build(store, clock, quotes)

    summary = orchestrator.recompute_volatility()

    assert summary.portfolios == 1
    assert summary.missing == 1
    saved = store.get_portfolio_metrics("u1", "p1")
    assert set(saved["positions"]) == {"AAPL", "MSFT"}
    assert saved["volatility"]["weighted_volatility"] == pytest.approx(30.0)
    assert "computed_at" in saved


class TestBackfill:
    def test_bars_are_stored_and_failures_listed(self, store, clock, tmp_path):
        store.add_position(make_position("AAPL"))
        store.add_position(make_position("ZZZZ"))
        history = PriceHistoryStore(str(tmp_path / "history.db"))
        provider = StubProvider(
            "bars",
            script=[make_bars([100, 101, 102]), ProviderError("bars", "unknown symbol", retryable=False)],
        )
        gateway = MarketDataGateway([provider], clock=clock, sleep=clock.sleep, retry_attempts=1)
        orchestrator = RefreshOrchestrator(gateway, store, history_store=history, history_days=30)

        summary = orchestrator.backfill_history()

        assert summary.symbols == 2
        assert summary.bars_stored == 3
        assert summary.failed == ["ZZZZ"]
        assert [bar.close for bar in history.get_bars("AAPL")] == [102, 101, 100]

    def test_without_history_store_is_skipped(self, store, clock):
        store.add_position(make_position("AAPL"))
        orchestrator, provider = build(store, clock, {})

        assert orchestrator.backfill_history().bars_stored == 0
        assert provider.calls == []
