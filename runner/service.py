"""
portfolio-signals Runner: Signal Service

Wires the gateway, engines, stores and scheduler from config/ and exposes
the query surface callers use:

- get_quote / get_quotes / decide
- analyze_position_risk / analyze_portfolio_risk
- symbol_performance (window metrics over stored daily history)
- trigger_refresh / trigger_decision_update (same locked path as the schedule;
  the job summary comes back so callers can show stale prices)
- status (breakers, cache, trading window, next tick, jobs, lock contention)

`main()` is the CLI entry point: run, once <job>, status.
"""

import json
import logging
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml

from core.analytics import volatility_metrics, window_metrics
from core.decision import DecisionEngine, DecisionThresholds
from core.gateway import MarketDataGateway
from core.models import Decision, PortfolioRisk, Position, PositionRisk, PriceQuote, QuoteResult
from core.providers import build_providers
from core.quote_cache import QuoteCache
from core.risk import RiskEngine
from infra.alerting import AlertService
from infra.healthcheck import HealthServer
from infra.history_store import PriceHistoryStore
from infra.locks import DistributedLock, LockStore, MemoryLockStore, SQLiteLockStore
from infra.metrics import MetricsRecorder
from infra.state_store import PositionStore
from runner.orchestrator import Notifier, RefreshOrchestrator
from runner.scheduler import JobOutcome, JobScheduler, TradingWindow, build_job_specs

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    outcome: JobOutcome
    summary: Any = None  # job body's return value; None unless outcome is RAN

    @property
    def stale(self) -> List[str]:
        return list(getattr(self.summary, "stale", None) or [])


class SignalService:
    """
    Long-running signal service.

    Every collaborator can be injected; anything not passed is built from
    app.yaml / policy.yaml.
    """

    def __init__(
        self,
        config_dir: str = "config",
        gateway: Optional[MarketDataGateway] = None,
        store: Optional[PositionStore] = None,
        history_store: Optional[PriceHistoryStore] = None,
        lock_store: Optional[LockStore] = None,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        notify: Optional[Notifier] = None,
        now: Optional[Callable[[], datetime]] = None,
        configure_logging: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        if configure_logging:
            self._configure_logging(self.app_config.get("logging", {}) or {})

        self._now = now or (lambda: datetime.now(timezone.utc))
        self.monitoring_config = self.app_config.get("monitoring", {}) or {}

        self.metrics = metrics or MetricsRecorder(
            enabled=bool(self.monitoring_config.get("metrics_enabled", False)),
            port=int(self.monitoring_config.get("metrics_port", 9100)),
        )
        self.alerts = alerts or AlertService.from_config(self.monitoring_config.get("alerts"))

        gateway_cfg = self.policy_config.get("gateway", {}) or {}
        self.gateway = gateway or self._build_gateway(gateway_cfg)

        state_cfg = self.app_config.get("state", {}) or {}
        self.store = store or PositionStore(state_cfg.get("positions_file"))
        self.history_store = history_store or PriceHistoryStore(state_cfg.get("history_db", "data/price_history.db"))

        self.decision_engine = DecisionEngine(DecisionThresholds.from_policy(self.policy_config))
        self.risk_engine = RiskEngine(self.policy_config)

        self.orchestrator = RefreshOrchestrator(
            gateway=self.gateway,
            store=self.store,
            decision_engine=self.decision_engine,
            risk_engine=self.risk_engine,
            notify=notify,
            history_store=self.history_store,
            alerts=self.alerts,
            metrics=self.metrics,
            history_days=int(gateway_cfg.get("history_days", 90)),
        )

        schedule_cfg = self.policy_config.get("schedule", {}) or {}
        self.lock = DistributedLock(lock_store or self._build_lock_store(), metrics=self.metrics)
        self.window = TradingWindow.from_config(self.policy_config.get("window"))
        self.scheduler = JobScheduler(
            build_job_specs(self.orchestrator, schedule_cfg),
            self.lock,
            window=self.window,
            alerts=self.alerts,
            metrics=self.metrics,
            now=self._now,
            lock_retries=int(schedule_cfg.get("lock_retries", 2)),
            lock_retry_delay=float(schedule_cfg.get("lock_retry_delay_seconds", 1.0)),
        )

        self.health_server: Optional[HealthServer] = None
        self._stop_event = threading.Event()

        logger.info("Initialized SignalService (config=%s)", self.config_dir)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _configure_logging(log_cfg: Dict[str, Any]) -> None:
        log_file = log_cfg.get("file", "logs/portfolio-signals.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _build_gateway(self, gateway_cfg: Dict[str, Any]) -> MarketDataGateway:
        providers = build_providers(
            self.policy_config.get("providers", []) or [],
            timeout=float(gateway_cfg.get("request_timeout_seconds", 5.0)),
        )
        cache = QuoteCache(
            capacity=int(gateway_cfg.get("cache_capacity", 1000)),
            ttl_seconds=float(gateway_cfg.get("cache_ttl_seconds", 20.0)),
        )
        return MarketDataGateway(
            providers,
            cache=cache,
            retry_attempts=int(gateway_cfg.get("retry_attempts", 3)),
            retry_base_delay=float(gateway_cfg.get("retry_base_delay_seconds", 0.5)),
            failure_threshold=int(gateway_cfg.get("failure_threshold", 5)),
            cooldown_seconds=float(gateway_cfg.get("cooldown_seconds", 60.0)),
            metrics=self.metrics,
            alerts=self.alerts,
            history_days=int(gateway_cfg.get("history_days", 90)),
        )

    def _build_lock_store(self) -> LockStore:
        locks_cfg = self.app_config.get("locks", {}) or {}
        backend = locks_cfg.get("backend", "sqlite")
        if backend == "memory":
            logger.warning("Using in-memory job locks; only safe with a single worker process")
            return MemoryLockStore()
        return SQLiteLockStore(locks_cfg.get("sqlite_path", "data/locks.db"))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_quote(self, symbol: str) -> QuoteResult:
        return self.gateway.fetch_quote(symbol)

    def get_quotes(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        return self.gateway.fetch_quotes(symbols)

    def decide(self, position: Position) -> Optional[Decision]:
        """Decision for one position at the current quote; None when no quote is available."""
        result = self.gateway.fetch_quote(position.ticker)
        if not result.ok:
            logger.warning("No quote for %s (%s); cannot decide", position.ticker, result.message)
            return None
        return self.decision_engine.decide(position, result.quote)

    def analyze_position_risk(self, position: Position, portfolio_value: float) -> PositionRisk:
        quote = self.gateway.fetch_quote(position.ticker).quote
        volatility = volatility_metrics(quote, now=self._now()) if quote else None
        return self.risk_engine.analyze_position(position, portfolio_value, quote=quote, volatility=volatility)

    def analyze_portfolio_risk(
        self,
        user_id: str,
        portfolio_id: str,
        positions: Optional[List[Position]] = None,
    ) -> PortfolioRisk:
        if positions is None:
            positions = self.store.list_positions(user_id=user_id, portfolio_id=portfolio_id)
        quotes = self.gateway.fetch_quotes(sorted({p.ticker for p in positions}))
        return self.risk_engine.analyze_portfolio(positions, quotes, portfolio_id=portfolio_id, now=self._now())

    def symbol_performance(self, symbol: str, days: int = 30) -> Optional[Dict[str, float]]:
        """Return, volatility and drawdown over stored history; None without enough bars."""
        bars = self.history_store.get_bars(symbol, since=self._now().date() - timedelta(days=days))
        try:
            return window_metrics(symbol.upper(), bars, days)
        except ValueError as exc:
            logger.info("No performance window for %s: %s", symbol, exc)
            return None

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------

    def trigger_refresh(self) -> TriggerResult:
        logger.info("Manual quote refresh triggered")
        return TriggerResult(*self.scheduler.run_job_with_result("quote_refresh", ignore_window=True))

    def trigger_decision_update(self) -> TriggerResult:
        logger.info("Manual decision update triggered")
        return TriggerResult(*self.scheduler.run_job_with_result("decision_refresh", ignore_window=True))

    def run_job(self, name: str) -> TriggerResult:
        return TriggerResult(*self.scheduler.run_job_with_result(name, ignore_window=True))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        now = self._now()
        cache = self.gateway.cache_stats()
        next_tick = self.scheduler.next_tick(now)
        return {
            "timestamp": now.isoformat(),
            "breakers": self.gateway.breaker_states(),
            "cache": {
                "size": cache["size"],
                "capacity": cache["capacity"],
                "hit_rate": cache["hit_rate"],
            },
            "window_open": self.window.is_open(now),
            "next_tick": next_tick.isoformat() if next_tick else None,
            "jobs": self.scheduler.job_states(),
            "lock_contention": self.metrics.lock_contention_snapshot(),
            "scheduler_running": self.scheduler.running,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start_health_server(self) -> None:
        cfg = self.monitoring_config
        if not cfg.get("healthcheck_enabled", False):
            return
        port = int(cfg.get("healthcheck_port", 0))
        if port <= 0:
            logger.warning("Health server port must be > 0; got %s", port)
            return

        server = HealthServer(port, self.status)
        try:
            server.start()
        except OSError as exc:
            logger.error("Failed to start health server on port %s: %s", port, exc)
            return
        self.health_server = server

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received; stopping scheduler")
        self._stop_event.set()

    def start(self) -> None:
        self.metrics.start()
        self._start_health_server()
        self.scheduler.start()

    def stop(self) -> None:
        self._stop_event.set()
        self.scheduler.shutdown(wait=True)
        if self.health_server:
            try:
                self.health_server.stop()
            except OSError as exc:
                logger.warning("Health server stop failed: %s", exc)
            self.health_server = None
        logger.info("SignalService stopped")

    def run(self) -> None:
        """Start background jobs and block until SIGINT/SIGTERM."""
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.start()
        logger.info("SignalService running; next tick %s", self.scheduler.next_tick())
        try:
            while not self._stop_event.wait(timeout=1.0):
                pass
        finally:
            self.stop()


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="portfolio-signals service")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run scheduled jobs until interrupted (default)")
    once = sub.add_parser("once", help="Run one job immediately and exit")
    once.add_argument("job", help="Job name, e.g. quote_refresh or decision_refresh")
    sub.add_parser("status", help="Print service status as JSON")

    args = parser.parse_args()

    service = SignalService(config_dir=args.config_dir)

    if args.command == "once":
        if args.job not in service.scheduler.job_names:
            parser.error(f"unknown job '{args.job}'; choose from {', '.join(service.scheduler.job_names)}")
        result = service.run_job(args.job)
        print(result.outcome.value)
        if result.stale:
            print(f"stale: {', '.join(result.stale)}")
        raise SystemExit(0 if result.outcome is not JobOutcome.FAILED else 1)
    if args.command == "status":
        print(json.dumps(service.status(), indent=2, default=str))
        return

    service.run()


if __name__ == "__main__":
    main()
