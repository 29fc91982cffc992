"""
portfolio-signals Core: Provider Gateway

Single entry point for market data. Owns the quote cache and one circuit
breaker per provider, wraps every provider attempt in a bounded retry loop,
and falls back across providers in priority order.

Expected failures never raise: callers get a QuoteResult (single symbol) or
a partial dict (batch). Stale cached data is preferred over no data.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from core.circuit_breaker import CircuitBreaker, DEFAULT_COOLDOWN_SECONDS, DEFAULT_FAILURE_THRESHOLD
from core.exceptions import ProviderError
from core.models import CircuitState, ErrorKind, PriceBar, PriceQuote, QuoteResult
from core.providers import DEFAULT_HISTORY_DAYS, QuoteProvider
from core.quote_cache import QuoteCache
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.5


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class MarketDataGateway:
    """
    Multi-provider market data with cache, retry and circuit breaking.

    All mutable state (cache, breakers) belongs to the instance; tests can
    run several gateways side by side.
    """

    def __init__(
        self,
        providers: Sequence[QuoteProvider],
        cache: Optional[QuoteCache] = None,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        metrics=None,
        alerts=None,
        history_days: int = DEFAULT_HISTORY_DAYS,
    ):
        if not providers:
            raise ValueError("MarketDataGateway requires at least one provider")

        self.providers: List[QuoteProvider] = list(providers)
        self.cache = cache or QuoteCache(clock=clock)
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_base_delay = retry_base_delay
        self.history_days = history_days
        self._sleep = sleep or time.sleep
        self.metrics = metrics
        self.alerts = alerts

        self._breakers: Dict[str, CircuitBreaker] = {
            provider.name: CircuitBreaker(
                provider.name,
                failure_threshold=failure_threshold,
                cooldown_seconds=cooldown_seconds,
                clock=clock,
                on_state_change=self._on_breaker_change,
            )
            for provider in self.providers
        }

        logger.info(
            "Initialized MarketDataGateway: providers=%s retry_attempts=%d threshold=%d cooldown=%.0fs",
            [p.name for p in self.providers],
            self.retry_attempts,
            failure_threshold,
            cooldown_seconds,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_quote(self, symbol: str) -> QuoteResult:
        key = normalize_symbol(symbol)
        if not key:
            return QuoteResult(symbol=symbol, error_kind=ErrorKind.PROVIDER_REJECTED, message="empty symbol")

        cached = self.cache.get(key)
        self._record_cache_lookup(cached is not None)
        if cached is not None:
            return QuoteResult(symbol=key, quote=cached)

        return self._fetch_uncached(key)

    def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        """
        Fetch many symbols concurrently.

        Symbols that fail outright are absent from the result; stale
        fallbacks are included with `stale=True`.
        """
        ordered: List[str] = []
        for symbol in symbols:
            key = normalize_symbol(symbol)
            if key and key not in ordered:
                ordered.append(key)

        found: Dict[str, PriceQuote] = {}
        pending: List[str] = []
        for key in ordered:
            cached = self.cache.get(key)
            self._record_cache_lookup(cached is not None)
            if cached is not None:
                found[key] = cached
            else:
                pending.append(key)

        if pending:
            with ThreadPoolExecutor(max_workers=len(pending), thread_name_prefix="quote-fetch") as executor:
                futures = {executor.submit(self._fetch_uncached, key): key for key in pending}
                for future in as_completed(futures):
                    key = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.error("Quote fetch for %s crashed: %s", key, exc, exc_info=True)
                        continue
                    if outcome.quote is not None:
                        found[key] = outcome.quote
                    else:
                        logger.warning("No quote for %s (%s): %s", key, outcome.error_kind.value, outcome.message)

        return {key: found[key] for key in ordered if key in found}

    def fetch_history(self, symbol: str, days: Optional[int] = None) -> List[PriceBar]:
        """Daily bars from the first provider that answers. Not cached; [] on failure."""
        key = normalize_symbol(symbol)
        if not key:
            return []
        days = days or self.history_days
        bars, error_kind, message = self._call_providers(key, lambda provider, sym: provider.fetch_bars(sym, days))
        if error_kind is not None:
            logger.warning("History unavailable for %s (%s): %s", key, error_kind.value, message)
            return []
        return bars

    def cache_stats(self) -> Dict[str, float]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    def breaker_states(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fetch_uncached(self, key: str) -> QuoteResult:
        quote, error_kind, message = self._call_providers(key, lambda provider, sym: provider.quote(sym, self.history_days))
        if error_kind is None:
            self.cache.put(key, quote)
            return QuoteResult(symbol=key, quote=quote)

        stale = self.cache.get_stale(key)
        if stale is not None:
            logger.warning("Serving stale quote for %s (%s): %s", key, error_kind.value, message)
            return QuoteResult(symbol=key, quote=replace(stale, stale=True), error_kind=error_kind, message=message)

        return QuoteResult(symbol=key, error_kind=error_kind, message=message)

    def _call_providers(
        self,
        symbol: str,
        operation: Callable[[QuoteProvider, str], Any],
    ) -> Tuple[Any, Optional[ErrorKind], str]:
        """
        Try providers in priority order.

        Returns (result, None, "") on success or (None, ErrorKind, message).
        """
        configured = False
        attempted = False
        errors: List[str] = []

        for provider in self.providers:
            if not provider.is_configured():
                continue
            configured = True

            breaker = self._breakers[provider.name]
            if not breaker.allow_request():
                errors.append(f"{provider.name}: circuit open")
                self._record_provider_outcome(provider.name, "circuit_open")
                continue

            attempted = True
            # HALF_OPEN trial gets exactly one attempt
            trial = breaker.in_trial()
            attempts = 1 if trial else self.retry_attempts
            outcome = "failure"
            try:
                result = self._attempt_with_retry(provider, symbol, operation, attempts)
                outcome = "success"
                return result, None, ""
            except ProviderError as exc:
                errors.append(str(exc))
                if exc.symbol_miss:
                    # The provider answered; only this symbol is unknown to it
                    outcome = "success" if trial else "symbol_miss"
            finally:
                if outcome == "success":
                    breaker.record_success()
                elif outcome == "failure":
                    breaker.record_failure()

        if not configured:
            return None, ErrorKind.NOT_CONFIGURED, "no market data provider is configured"
        if not attempted:
            return None, ErrorKind.CIRCUIT_OPEN, "; ".join(errors)
        return None, ErrorKind.EXHAUSTED, "; ".join(errors)

    def _attempt_with_retry(
        self,
        provider: QuoteProvider,
        symbol: str,
        operation: Callable[[QuoteProvider, str], Any],
        attempts: int,
    ) -> Any:
        last_error: Optional[ProviderError] = None

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                try:
                    result = operation(provider, symbol)
                except ProviderError:
                    raise
                except Exception as exc:
                    logger.error("%s raised unexpectedly for %s: %s", provider.name, symbol, exc, exc_info=True)
                    raise ProviderError(provider.name, f"unexpected error: {exc!r}") from exc
            except ProviderError as exc:
                last_error = exc
                self._record_provider_outcome(
                    provider.name,
                    "retryable_error" if exc.retryable else "rejected",
                    time.monotonic() - started,
                )
                if not exc.retryable:
                    logger.warning("%s rejected %s: %s", provider.name, symbol, exc)
                    break
                if attempt < attempts:
                    delay = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "%s failed for %s (attempt %d/%d): %s; retrying in %.2fs",
                        provider.name, symbol, attempt, attempts, exc, delay,
                    )
                    self._sleep(delay)
                continue

            self._record_provider_outcome(provider.name, "success", time.monotonic() - started)
            return result

        if last_error is None:
            raise ProviderError(provider.name, "no attempts made")
        logger.warning("%s exhausted for %s after %d attempt(s): %s", provider.name, symbol, attempt, last_error)
        raise last_error

    def _on_breaker_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        if self.metrics:
            self.metrics.record_circuit_breaker_state(name, new.value)
        if new is CircuitState.OPEN and self.alerts:
            self.alerts.notify(
                AlertSeverity.WARNING,
                f"Provider circuit opened: {name}",
                f"{name} breaker moved {old.value} -> {new.value}; requests paused",
                {"provider": name},
            )

    def _record_cache_lookup(self, hit: bool) -> None:
        if self.metrics:
            self.metrics.record_cache_lookup(hit)

    def _record_provider_outcome(self, provider: str, outcome: str, duration: Optional[float] = None) -> None:
        if self.metrics:
            self.metrics.record_provider_request(provider, outcome, duration)
