"""
Context Cache

TTL cache for market data with request coalescing and stale fallback.

    - Fresh entries (age < ttl) are served directly
    - Concurrent misses for the same key trigger a single load
    - A failed load serves the last value while it is younger than
      fallback_max_age, otherwise the failure propagates
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional
import logging
import threading
import time

from strikeflow.errors import MarketDataUnavailableError

LOG = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class ContextCache:
    """Thread-safe TTL cache keyed by arbitrary hashable keys"""

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        fallback_max_age_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.fallback_max_age_seconds = fallback_max_age_seconds
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self._lock = threading.RLock()

        self.hits = 0
        self.misses = 0
        self.stale_served = 0

    def put(self, key: Hashable, value: Any):
        """Store a value (push-style update)"""
        with self._lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def peek(self, key: Hashable) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def get(self, key: Hashable, loader: Optional[Callable[[], Any]] = None) -> Any:
        """
        Return the cached value for key, loading it when missing or expired.

        Args:
            key: Cache key
            loader: Zero-argument callable fetching a fresh value

        Raises:
            MarketDataUnavailableError: no fresh value and no usable fallback
        """
        entry = self._fresh_entry(key)
        if entry is not None:
            return entry.value

        if loader is None:
            return self._fallback(key, "no fresh data")

        with self._key_lock(key):
            # Another thread may have loaded while we waited
            entry = self._fresh_entry(key, count=False)
            if entry is not None:
                return entry.value

            try:
                value = loader()
            except Exception as e:
                LOG.warning(f"Context load failed for {key}: {e}")
                return self._fallback(key, str(e))

            self.put(key, value)
            return value

    def invalidate(self, key: Optional[Hashable] = None):
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'entries': len(self._entries),
                'hits': self.hits,
                'misses': self.misses,
                'stale_served': self.stale_served,
                'ttl_seconds': self.ttl_seconds,
            }

    def _fresh_entry(self, key: Hashable, count: bool = True) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry.stored_at < self.ttl_seconds:
                if count:
                    self.hits += 1
                return entry
            if count:
                self.misses += 1
            return None

    def _fallback(self, key: Hashable, cause: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                age = self._clock() - entry.stored_at
                if age <= self.fallback_max_age_seconds:
                    self.stale_served += 1
                    LOG.warning(f"Serving stale data for {key} (age {age:.0f}s)")
                    return entry.value
        raise MarketDataUnavailableError(f"No usable data for {key}: {cause}")

    def _key_lock(self, key: Hashable) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock
