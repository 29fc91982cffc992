"""
portfolio-signals Core: Provider Circuit Breaker

One breaker per market-data provider. Consecutive failures open the breaker;
after a cool-down a single trial request decides whether it closes again.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from core.models import CircuitState

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_SECONDS = 60.0


class CircuitBreaker:
    """
    CLOSED -> OPEN after `failure_threshold` failures.
    OPEN -> HALF_OPEN once `cooldown_seconds` have elapsed; one trial is admitted.
    HALF_OPEN -> CLOSED on trial success, back to OPEN on trial failure.

    `on_state_change(name, old_state, new_state)` is invoked outside the lock.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        on_state_change: Optional[Callable[[str, CircuitState, CircuitState], None]] = None,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or time.monotonic
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        # Caller holds the lock
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            return CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """
        Whether a request may be sent now.

        In HALF_OPEN only the first caller gets True until the trial reports back.
        """
        transition = None
        with self._lock:
            state = self._current_state()
            if state is CircuitState.CLOSED:
                return True
            if state is CircuitState.OPEN:
                return False
            if self._trial_in_flight:
                return False
            if self._state is not CircuitState.HALF_OPEN:
                transition = (self._state, CircuitState.HALF_OPEN)
                self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = True
        if transition:
            self._notify(*transition)
        return True

    def in_trial(self) -> bool:
        with self._lock:
            return self._trial_in_flight

    def record_success(self) -> None:
        transition = None
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                transition = (self._state, CircuitState.CLOSED)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False
        if transition:
            self._notify(*transition)

    def record_failure(self) -> None:
        transition = None
        with self._lock:
            now = self._clock()
            self._last_failure_at = now
            if self._state is CircuitState.HALF_OPEN or self._trial_in_flight:
                transition = (self._state, CircuitState.OPEN)
                self._state = CircuitState.OPEN
                self._opened_at = now
                self._trial_in_flight = False
            else:
                self._failures += 1
                if self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
                    transition = (CircuitState.CLOSED, CircuitState.OPEN)
                    self._state = CircuitState.OPEN
                    self._opened_at = now
        if transition:
            self._notify(*transition)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._current_state().value,
                "failures": self._failures,
                "last_failure_at": self._last_failure_at,
                "opened_at": self._opened_at,
            }

    def _notify(self, old: CircuitState, new: CircuitState) -> None:
        if new is CircuitState.OPEN:
            logger.warning("Circuit breaker %s: %s -> %s", self.name, old.value, new.value)
        else:
            logger.info("Circuit breaker %s: %s -> %s", self.name, old.value, new.value)
        if self._on_state_change:
            try:
                self._on_state_change(self.name, old, new)
            except Exception as exc:
                logger.error("Circuit breaker %s state hook failed: %s", self.name, exc)
