"""
Distributed Job Lock - Prevent Duplicate Refresh Work Across Workers

Several service instances may run the same schedule. Before a job body runs,
the scheduler takes a named, TTL-bounded lock so only one instance does the
work for a given tick:
- Keys are `cron:lock:<job>`
- The holder value identifies host, pid and a random suffix
- A crashed holder's lock simply expires after its TTL

Backends:
- MemoryLockStore: single process (tests, local runs)
- SQLiteLockStore: shared database file, atomic via BEGIN IMMEDIATE
"""

import logging
import os
import socket
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "cron:lock:"
DEFAULT_TTL_SECONDS = 300
DEFAULT_RETRIES = 2
DEFAULT_RETRY_DELAY = 1.0


@dataclass(frozen=True)
class LockInfo:
    key: str
    holder: str
    expires_at: float


@dataclass(frozen=True)
class LockHandle:
    """Proof of ownership returned by a successful acquire."""
    job: str
    key: str
    holder: str
    expires_at: float


class LockStore(ABC):
    """Atomic set-if-absent with expiry, plus owner-checked delete."""

    _clock: Callable[[], float]

    def now(self) -> float:
        return self._clock()

    @abstractmethod
    def try_acquire(self, key: str, holder: str, ttl: float) -> bool:
        ...

    @abstractmethod
    def release(self, key: str, holder: str) -> bool:
        ...

    @abstractmethod
    def inspect(self, key: str) -> Optional[LockInfo]:
        ...

    @abstractmethod
    def force_release_all(self) -> int:
        ...


class MemoryLockStore(LockStore):
    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._locks: Dict[str, LockInfo] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, key: str, holder: str, ttl: float) -> bool:
        with self._mutex:
            now = self._clock()
            current = self._locks.get(key)
            if current is not None and current.expires_at > now:
                return False
            self._locks[key] = LockInfo(key=key, holder=holder, expires_at=now + ttl)
            return True

    def release(self, key: str, holder: str) -> bool:
        with self._mutex:
            current = self._locks.get(key)
            if current is None or current.holder != holder:
                return False
            del self._locks[key]
            return True

    def inspect(self, key: str) -> Optional[LockInfo]:
        with self._mutex:
            current = self._locks.get(key)
            if current is None or current.expires_at <= self._clock():
                return None
            return current

    def force_release_all(self) -> int:
        with self._mutex:
            count = len(self._locks)
            self._locks.clear()
            return count


class SQLiteLockStore(LockStore):
    """
    Lock table in a SQLite file shared by every worker on the host.

    Each operation opens its own connection so the store is safe to use from
    scheduler threads.
    """

    def __init__(self, db_path: str = "data/locks.db", clock: Optional[Callable[[], float]] = None, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or time.time
        self._timeout = timeout
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly
        return sqlite3.connect(str(self.db_path), timeout=self._timeout, isolation_level=None)

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_locks (
                    lock_key TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
        finally:
            conn.close()

    def try_acquire(self, key: str, holder: str, ttl: float) -> bool:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            now = self._clock()
            row = conn.execute(
                "SELECT holder, expires_at FROM job_locks WHERE lock_key = ?", (key,)
            ).fetchone()
            if row is not None and row[1] > now:
                conn.execute("ROLLBACK")
                return False
            conn.execute(
                "INSERT OR REPLACE INTO job_locks (lock_key, holder, expires_at) VALUES (?, ?, ?)",
                (key, holder, now + ttl),
            )
            conn.execute("COMMIT")
            return True
        except sqlite3.OperationalError as exc:
            # Busy database counts as contention
            logger.warning("Lock store busy for %s: %s", key, exc)
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            return False
        finally:
            conn.close()

    def release(self, key: str, holder: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM job_locks WHERE lock_key = ? AND holder = ?", (key, holder)
            )
            return cursor.rowcount > 0
        finally:
            conn.close()

    def inspect(self, key: str) -> Optional[LockInfo]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT holder, expires_at FROM job_locks WHERE lock_key = ? AND expires_at > ?",
                (key, self._clock()),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return LockInfo(key=key, holder=row[0], expires_at=row[1])

    def force_release_all(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("DELETE FROM job_locks").rowcount
        finally:
            conn.close()


def default_holder_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class DistributedLock:
    """
    Named job locks on top of a LockStore.

    Usage:
        lock = DistributedLock(SQLiteLockStore("data/locks.db"))
        with lock.hold("decision_refresh") as acquired:
            if acquired:
                run_job()
    """

    def __init__(
        self,
        store: LockStore,
        holder: Optional[str] = None,
        sleep: Optional[Callable[[float], None]] = None,
        metrics=None,
    ):
        self.store = store
        self.holder = holder or default_holder_id()
        self._sleep = sleep or time.sleep
        self.metrics = metrics

    @staticmethod
    def key_for(job: str) -> str:
        return f"{LOCK_KEY_PREFIX}{job}"

    def acquire(
        self,
        job: str,
        ttl: float = DEFAULT_TTL_SECONDS,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> Optional[LockHandle]:
        """
        Try to take the lock for `job`; `retries` extra attempts spaced by `retry_delay`.

        Returns a LockHandle, or None when another holder keeps the lock.
        """
        key = self.key_for(job)
        attempts = 1 + max(0, int(retries))

        for attempt in range(1, attempts + 1):
            if self.store.try_acquire(key, self.holder, ttl):
                logger.debug("Acquired %s (holder=%s, ttl=%ss)", key, self.holder, ttl)
                return LockHandle(job=job, key=key, holder=self.holder, expires_at=self.store.now() + ttl)
            if attempt < attempts:
                self._sleep(retry_delay)

        current = self.store.inspect(key)
        logger.info(
            "Lock %s busy after %d attempt(s); held by %s",
            key,
            attempts,
            current.holder if current else "unknown",
        )
        if self.metrics:
            self.metrics.record_lock_contention(job)
        return None

    def release(self, handle: LockHandle) -> bool:
        released = self.store.release(handle.key, handle.holder)
        if not released:
            logger.warning("Lock %s was no longer held by %s at release (expired?)", handle.key, handle.holder)
        return released

    @contextmanager
    def hold(
        self,
        job: str,
        ttl: float = DEFAULT_TTL_SECONDS,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> Iterator[bool]:
        handle = self.acquire(job, ttl=ttl, retries=retries, retry_delay=retry_delay)
        try:
            yield handle is not None
        finally:
            if handle is not None:
                self.release(handle)
