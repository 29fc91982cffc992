"""
portfolio-signals Runner: Job Scheduler

Calendar-driven refresh jobs. Every tick goes through the same guarded path:

    IDLE -> ACQUIRING_LOCK -> RUNNING -> IDLE

- Interval jobs only run while the trading window is open
- A busy distributed lock skips the tick (another worker has it)
- A failing job body is logged and alerted; later ticks are unaffected

APScheduler's BackgroundScheduler fires the ticks; `run_job` is the
explicit, injectable step tests drive directly.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, time as dtime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from infra.alerting import AlertSeverity
from infra.locks import DEFAULT_RETRIES, DEFAULT_RETRY_DELAY, DEFAULT_TTL_SECONDS, DistributedLock

logger = logging.getLogger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri")
_DAY_INDEX = {name: idx for idx, name in enumerate(("mon", "tue", "wed", "thu", "fri", "sat", "sun"))}


class JobState(Enum):
    IDLE = "IDLE"
    ACQUIRING_LOCK = "ACQUIRING_LOCK"
    RUNNING = "RUNNING"


class JobOutcome(Enum):
    RAN = "ran"
    SKIPPED_LOCK = "skipped_lock"
    SKIPPED_WINDOW = "skipped_window"
    FAILED = "failed"


def _parse_hhmm(value: str) -> dtime:
    hour, minute = (int(part) for part in value.split(":"))
    return dtime(hour=hour, minute=minute)


class TradingWindow:
    """Active market hours in a fixed timezone; open inclusive, close exclusive."""

    def __init__(
        self,
        timezone: str = "America/New_York",
        open: str = "09:30",
        close: str = "16:00",
        days: Sequence[str] = WEEKDAYS,
    ):
        self.timezone = timezone
        self.tz = ZoneInfo(timezone)
        self.open_time = _parse_hhmm(open)
        self.close_time = _parse_hhmm(close)
        self.days = tuple(day.lower()[:3] for day in days)
        self._day_indexes = {_DAY_INDEX[day] for day in self.days}

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "TradingWindow":
        cfg = cfg or {}
        return cls(
            timezone=cfg.get("timezone", "America/New_York"),
            open=cfg.get("open", "09:30"),
            close=cfg.get("close", "16:00"),
            days=cfg.get("days", WEEKDAYS),
        )

    def localize(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def is_open(self, now: Optional[datetime] = None) -> bool:
        local = self.localize(now)
        if local.weekday() not in self._day_indexes:
            return False
        return self.open_time <= local.time() < self.close_time

    def __repr__(self) -> str:
        return (
            f"TradingWindow({self.timezone} {self.open_time:%H:%M}-{self.close_time:%H:%M} "
            f"{','.join(self.days)})"
        )


@dataclass
class JobSpec:
    name: str
    body: Callable[[], Any]
    cron: Dict[str, Any]  # CronTrigger fields: minute, hour, day_of_week, ...
    requires_window: bool = False
    lock_ttl: float = DEFAULT_TTL_SECONDS


@dataclass
class JobStatus:
    state: JobState = JobState.IDLE
    last_outcome: Optional[JobOutcome] = None
    last_run_at: Optional[datetime] = None
    last_duration: Optional[float] = None
    last_error: Optional[str] = None
    last_result: Any = None
    runs: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_duration": self.last_duration,
            "last_error": self.last_error,
            "last_result": asdict(self.last_result) if is_dataclass(self.last_result) else self.last_result,
            "runs": dict(self.runs),
        }


DEFAULT_TRIGGERS: Dict[str, Dict[str, Any]] = {
    "quote_refresh": {"minute": "*/15", "hour": "9-15", "day_of_week": "mon-fri"},
    "decision_refresh": {"minute": "*/5", "hour": "9-15", "day_of_week": "mon-fri"},
    "risk_refresh": {"minute": "*/2", "hour": "9-15", "day_of_week": "mon-fri"},
    "market_open": {"minute": 30, "hour": 9, "day_of_week": "mon-fri"},
    "market_close": {"minute": 0, "hour": 16, "day_of_week": "mon-fri"},
    "volatility_recompute": {"minute": 0, "hour": 17, "day_of_week": "mon-fri"},
    "history_backfill": {"minute": 0, "hour": 2},
}

WINDOW_GUARDED_JOBS = {"quote_refresh", "decision_refresh", "risk_refresh"}


def build_job_specs(orchestrator, schedule_cfg: Optional[Dict[str, Any]] = None) -> List[JobSpec]:
    """
    Standard job table for a RefreshOrchestrator.

    `schedule_cfg` may override any trigger (`triggers.<job>`) and lock TTLs
    (`lock_ttl_seconds.<job>` or `lock_ttl_seconds.default`).
    """
    schedule_cfg = schedule_cfg or {}
    trigger_overrides = schedule_cfg.get("triggers", {}) or {}
    ttl_cfg = schedule_cfg.get("lock_ttl_seconds", {}) or {}
    default_ttl = float(ttl_cfg.get("default", DEFAULT_TTL_SECONDS))

    def _boundary() -> None:
        orchestrator.refresh_quotes()
        orchestrator.refresh_decisions()

    bodies: Dict[str, Callable[[], Any]] = {
        "quote_refresh": orchestrator.refresh_quotes,
        "decision_refresh": orchestrator.refresh_decisions,
        "risk_refresh": orchestrator.refresh_risk,
        "market_open": _boundary,
        "market_close": _boundary,
        "volatility_recompute": orchestrator.recompute_volatility,
        "history_backfill": orchestrator.backfill_history,
    }

    return [
        JobSpec(
            name=name,
            body=bodies[name],
            cron=dict(trigger_overrides.get(name) or DEFAULT_TRIGGERS[name]),
            requires_window=name in WINDOW_GUARDED_JOBS,
            lock_ttl=float(ttl_cfg.get(name, default_ttl)),
        )
        for name in DEFAULT_TRIGGERS
    ]


class JobScheduler:
    """Runs JobSpecs on cron triggers behind the trading window and a distributed lock."""

    def __init__(
        self,
        jobs: Iterable[JobSpec],
        lock: DistributedLock,
        window: Optional[TradingWindow] = None,
        alerts=None,
        metrics=None,
        now: Optional[Callable[[], datetime]] = None,
        lock_retries: int = DEFAULT_RETRIES,
        lock_retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.window = window or TradingWindow()
        self.lock = lock
        self.alerts = alerts
        self.metrics = metrics
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.lock_retries = lock_retries
        self.lock_retry_delay = lock_retry_delay

        self._jobs: Dict[str, JobSpec] = {}
        self._triggers: Dict[str, CronTrigger] = {}
        self._status: Dict[str, JobStatus] = {}
        for spec in jobs:
            self._jobs[spec.name] = spec
            self._triggers[spec.name] = CronTrigger(timezone=self.window.tz, **spec.cron)
            self._status[spec.name] = JobStatus()

        self._state_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

        logger.info("Initialized JobScheduler with %d jobs, window %r", len(self._jobs), self.window)

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    def run_job(self, name: str, ignore_window: bool = False) -> JobOutcome:
        """
        One guarded tick of `name`.

        Manual triggers pass `ignore_window=True`; they still take the lock.

        Raises:
            KeyError: unknown job name
        """
        outcome, _ = self.run_job_with_result(name, ignore_window=ignore_window)
        return outcome

    def run_job_with_result(self, name: str, ignore_window: bool = False) -> Tuple[JobOutcome, Any]:
        """Like run_job, also returning the job body's result (None unless it ran)."""
        spec = self._jobs[name]
        status = self._status[name]
        started_at = self._now()

        if spec.requires_window and not ignore_window and not self.window.is_open(started_at):
            logger.debug("Skipping %s: trading window closed", name)
            return self._finish(name, JobOutcome.SKIPPED_WINDOW, started_at, None), None

        with self._state_lock:
            if status.state is not JobState.IDLE:
                # Previous tick of this job still running in this process
                logger.info("Skipping %s: already %s", name, status.state.value)
                return self._finish(name, JobOutcome.SKIPPED_LOCK, started_at, None, reset_state=False), None
            status.state = JobState.ACQUIRING_LOCK

        try:
            handle = self.lock.acquire(
                name,
                ttl=spec.lock_ttl,
                retries=self.lock_retries,
                retry_delay=self.lock_retry_delay,
            )
        except Exception:
            with self._state_lock:
                status.state = JobState.IDLE
            raise
        if handle is None:
            logger.info("Skipping %s: lock held by another worker", name)
            return self._finish(name, JobOutcome.SKIPPED_LOCK, started_at, None), None

        status.state = JobState.RUNNING
        t0 = time.monotonic()
        error: Optional[str] = None
        result: Any = None
        try:
            result = spec.body()
            outcome = JobOutcome.RAN
            logger.info("Job %s finished in %.2fs: %s", name, time.monotonic() - t0, result)
        except Exception as exc:
            outcome = JobOutcome.FAILED
            error = f"{type(exc).__name__}: {exc}"
            logger.error("Job %s failed: %s", name, error, exc_info=True)
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    f"Scheduled job failed: {name}",
                    error,
                    {"job": name},
                )
        finally:
            self.lock.release(handle)

        self._finish(name, outcome, started_at, time.monotonic() - t0, error=error, result=result)
        return outcome, result

    def _finish(
        self,
        name: str,
        outcome: JobOutcome,
        started_at: datetime,
        duration: Optional[float],
        error: Optional[str] = None,
        reset_state: bool = True,
        result: Any = None,
    ) -> JobOutcome:
        with self._state_lock:
            status = self._status[name]
            if reset_state:
                status.state = JobState.IDLE
            status.last_outcome = outcome
            status.last_run_at = started_at
            status.last_duration = duration
            status.last_error = error
            status.last_result = result
            status.runs[outcome.value] = status.runs.get(outcome.value, 0) + 1
        if self.metrics:
            self.metrics.record_job_run(name, outcome.value, duration)
        return outcome

    # ------------------------------------------------------------------
    # Background scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler(timezone=self.window.tz)
        for name, trigger in self._triggers.items():
            self._scheduler.add_job(
                self.run_job,
                trigger,
                args=[name],
                id=name,
                name=name,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
                replace_existing=True,
            )
            logger.info("Scheduled %s: %s", name, self._jobs[name].cron)
        self._scheduler.start()
        logger.info("Job scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Job scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def next_ticks(self, now: Optional[datetime] = None) -> Dict[str, Optional[datetime]]:
        now = self.window.localize(now or self._now())
        return {name: trigger.get_next_fire_time(None, now) for name, trigger in self._triggers.items()}

    def next_tick(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest upcoming fire time across all jobs."""
        upcoming = [fire for fire in self.next_ticks(now).values() if fire is not None]
        return min(upcoming) if upcoming else None

    def job_states(self) -> Dict[str, Dict[str, Any]]:
        with self._state_lock:
            return {name: status.to_dict() for name, status in self._status.items()}
