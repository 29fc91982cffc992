"""Prometheus-backed metrics for the gateway, scheduler and refresh jobs."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "signals_"

_BREAKER_STATE_VALUE = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


class MetricsRecorder:
    """
    Expose service stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    When disabled, calls still update the in-process snapshots; the status
    query reports lock contention from them.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_job_outcomes: Dict[str, str] = {}
        self._breaker_states: Dict[str, str] = {}
        self._lock_contention: Dict[str, int] = {}

        if not self._enabled:
            self._cache_lookups = None
            self._provider_requests = None
            self._provider_latency = None
            self._breaker_gauge = None
            self._job_runs = None
            self._job_duration = None
            self._lock_contention_counter = None
            self._notifications = None
            self._decision_changes = None
            return

        self._cache_lookups = Counter(
            f"{METRIC_PREFIX}quote_cache_lookups_total",
            "Quote cache lookups by result",
            labelnames=("result",),  # hit / miss
        )
        self._provider_requests = Counter(
            f"{METRIC_PREFIX}provider_requests_total",
            "Market data provider requests by outcome",
            labelnames=("provider", "outcome"),
        )
        self._provider_latency = Summary(
            f"{METRIC_PREFIX}provider_request_seconds",
            "Latency of market data provider requests",
            labelnames=("provider",),
        )
        self._breaker_gauge = Gauge(
            f"{METRIC_PREFIX}circuit_breaker_state",
            "Provider circuit breaker state (0=closed, 1=half_open, 2=open)",
            labelnames=("provider",),
        )
        self._job_runs = Counter(
            f"{METRIC_PREFIX}job_runs_total",
            "Scheduled job ticks by outcome",
            labelnames=("job", "outcome"),
        )
        self._job_duration = Summary(
            f"{METRIC_PREFIX}job_duration_seconds",
            "Duration of scheduled job bodies",
            labelnames=("job",),
        )
        self._lock_contention_counter = Counter(
            f"{METRIC_PREFIX}lock_contention_total",
            "Job ticks skipped because another worker held the lock",
            labelnames=("job",),
        )
        self._notifications = Counter(
            f"{METRIC_PREFIX}notifications_total",
            "Action-change notifications by delivery outcome",
            labelnames=("outcome",),
        )
        self._decision_changes = Counter(
            f"{METRIC_PREFIX}decision_changes_total",
            "Position action changes by new action",
            labelnames=("action",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_cache_lookup(self, hit: bool) -> None:
        if self._enabled and self._cache_lookups:
            self._cache_lookups.labels(result="hit" if hit else "miss").inc()

    def record_provider_request(self, provider: str, outcome: str, duration: Optional[float] = None) -> None:
        if not self._enabled or self._provider_requests is None or self._provider_latency is None:
            return
        self._provider_requests.labels(provider=provider, outcome=outcome).inc()
        if duration is not None:
            self._provider_latency.labels(provider=provider).observe(duration)

    def record_circuit_breaker_state(self, provider: str, state: str) -> None:
        self._breaker_states[provider] = state
        if self._enabled and self._breaker_gauge:
            self._breaker_gauge.labels(provider=provider).set(_BREAKER_STATE_VALUE.get(state, 0))

    def record_job_run(self, job: str, outcome: str, duration: Optional[float] = None) -> None:
        self._last_job_outcomes[job] = outcome
        if not self._enabled or self._job_runs is None or self._job_duration is None:
            return
        self._job_runs.labels(job=job, outcome=outcome).inc()
        if duration is not None:
            self._job_duration.labels(job=job).observe(duration)

    def record_lock_contention(self, job: str) -> None:
        self._lock_contention[job] = self._lock_contention.get(job, 0) + 1
        if self._enabled and self._lock_contention_counter:
            self._lock_contention_counter.labels(job=job).inc()

    def record_notification(self, outcome: str) -> None:
        if self._enabled and self._notifications:
            self._notifications.labels(outcome=outcome).inc()

    def record_decision_change(self, action: str) -> None:
        if self._enabled and self._decision_changes:
            self._decision_changes.labels(action=action).inc()

    def last_job_outcomes(self) -> Dict[str, str]:
        return dict(self._last_job_outcomes)

    def breaker_state_snapshot(self) -> Dict[str, str]:
        return dict(self._breaker_states)

    def lock_contention_snapshot(self) -> Dict[str, int]:
        return dict(self._lock_contention)


__all__ = ["MetricsRecorder"]
