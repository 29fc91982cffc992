"""
portfolio-signals Core: Quote Cache

Bounded LRU of PriceQuotes keyed by upper-cased symbol. Entries expire a fixed
TTL after they were stored; reads never extend an entry's age.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from core.models import PriceQuote

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_TTL_SECONDS = 20.0


@dataclass
class _Entry:
    quote: PriceQuote
    stored_at: float


class QuoteCache:
    """Thread-safe TTL + LRU cache for quotes."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(symbol: str) -> str:
        return symbol.strip().upper()

    def get(self, symbol: str) -> Optional[PriceQuote]:
        """Return a fresh quote or None. Counts a hit or a miss."""
        key = self._key(symbol)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() - entry.stored_at >= self.ttl_seconds:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.quote

    def get_stale(self, symbol: str) -> Optional[PriceQuote]:
        """Return the last stored quote regardless of age."""
        with self._lock:
            entry = self._entries.get(self._key(symbol))
            return entry.quote if entry else None

    def put(self, symbol: str, quote: PriceQuote) -> None:
        key = self._key(symbol)
        with self._lock:
            self._entries[key] = _Entry(quote=quote, stored_at=self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Quote cache full, evicted %s", evicted)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return self._key(symbol) in self._entries

    def stats(self) -> Dict[str, float]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": (self._hits / lookups) if lookups else 0.0,
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Quote cache cleared")
