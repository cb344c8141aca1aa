"""
Deduplication Cache

Time-windowed duplicate detector keyed by a canonical signal fingerprint.

Fingerprint = sha256(source | symbol | direction | timeframe | payload_hash).
The tracking ID is deliberately excluded: replays of the same payload get
new IDs from the normalizer but must still collide here.
"""

from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Optional, Tuple
import hashlib
import logging
import threading

from strikeflow.signals.config import DeduplicationConfig
from strikeflow.signals.schemas import Signal, utcnow

LOG = logging.getLogger(__name__)


class DeduplicationCache:
    """
    Thread-safe duplicate detector.

    Lookups are O(1) dict membership. Expired fingerprints are evicted from
    the head of an insertion-ordered deque, so cleanup cost is amortised
    over inserts.
    """

    def __init__(
        self,
        config: Optional[DeduplicationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or DeduplicationConfig()
        self._clock = clock
        self._seen: Dict[str, datetime] = {}
        self._order: Deque[Tuple[str, datetime]] = deque()
        self._lock = threading.RLock()

        self.checks = 0
        self.duplicates = 0

    @staticmethod
    def fingerprint(signal: Signal) -> str:
        parts = (
            signal.source.value,
            signal.symbol,
            signal.direction.value,
            signal.timeframe,
            signal.payload_hash,
        )
        return hashlib.sha256('|'.join(parts).encode()).hexdigest()

    def is_duplicate(self, signal: Signal) -> bool:
        """
        Check and record a signal.

        Returns:
            False on first sighting inside the window (the fingerprint is
            recorded), True for any repeat inside the window.
        """
        key = self.fingerprint(signal)
        now = self._clock()

        with self._lock:
            self.checks += 1
            self._evict_expired(now)

            if key in self._seen:
                self.duplicates += 1
                LOG.info(f"Duplicate signal {signal.id} ({signal.symbol} {signal.direction.value})")
                return True

            self._seen[key] = now
            self._order.append((key, now))

            while len(self._seen) > self.config.max_entries:
                old_key, old_time = self._order.popleft()
                if self._seen.get(old_key) == old_time:
                    del self._seen[old_key]

            return False

    def purge_expired(self) -> int:
        """Evict expired fingerprints, returns number removed"""
        with self._lock:
            before = len(self._seen)
            self._evict_expired(self._clock())
            return before - len(self._seen)

    def size(self) -> int:
        with self._lock:
            return len(self._seen)

    def clear(self):
        with self._lock:
            self._seen.clear()
            self._order.clear()

    def get_stats(self) -> dict:
        with self._lock:
            return {
                'entries': len(self._seen),
                'checks': self.checks,
                'duplicates': self.duplicates,
                'window_seconds': self.config.window_seconds,
            }

    def _evict_expired(self, now: datetime):
        window = self.config.window_seconds
        while self._order:
            key, seen_at = self._order[0]
            if (now - seen_at).total_seconds() < window:
                break
            self._order.popleft()
            if self._seen.get(key) == seen_at:
                del self._seen[key]
