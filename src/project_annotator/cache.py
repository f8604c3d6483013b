"""
In-memory TTL cache guarded by a reader/writer lock.

Entries are immutable once inserted. Reads check expiry on every access, so a
background sweep only reclaims memory and is never needed for correctness.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Iterator, Optional, TypeVar

K = TypeVar('K', bound=Hashable)


class ReadWriteLock:
    """Lock allowing many concurrent readers or a single writer. Writers are preferred."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._condition:
            while self._writer or self._waiting_writers > 0:
                self._condition.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._condition:
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()

    def acquire_write(self) -> None:
        with self._condition:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers > 0:
                    self._condition.wait()
                self._writer = True
            finally:
                self._waiting_writers -= 1

    def release_write(self) -> None:
        with self._condition:
            self._writer = False
            self._condition.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


@dataclass(frozen=True)
class CacheEntry:
    """Cache entry with absolute expiry"""
    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        """Check if cache entry is still valid at ``now``"""
        return now < self.expires_at


class TTLCache(Generic[K]):
    """
    Map of keys to string values that expire ``ttl`` seconds after insertion.

    Args:
        ttl: Lifetime of an entry in seconds
        clock: Monotonic time source, replaceable in tests
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError(f"cache ttl must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[K, CacheEntry] = {}
        self._lock = ReadWriteLock()

    def get(self, key: K) -> Optional[str]:
        """
        Return the cached value, or None when absent or expired.

        Expired entries are left in place for the sweep to remove.
        """
        with self._lock.read_locked():
            entry = self._entries.get(key)
        if entry is not None and entry.is_valid(self._clock()):
            return entry.value
        return None

    def set(self, key: K, value: str) -> CacheEntry:
        """Insert or replace an entry, expiring ``ttl`` seconds from now."""
        entry = CacheEntry(value=value, expires_at=self._clock() + self.ttl)
        with self._lock.write_locked():
            self._entries[key] = entry
        return entry

    def evict_expired(self) -> int:
        """
        Remove every expired entry.

        Returns:
            int: Number of entries removed
        """
        now = self._clock()
        with self._lock.write_locked():
            expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock.write_locked():
            self._entries = {}

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)
