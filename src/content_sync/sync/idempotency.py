"""
Replay cache for sync command responses.

A command redelivered after its response was already sent (consumer crash
between publish and ack, broker failover) must not be applied twice. The
response of every completed command is kept for a while, keyed by its
correlation id, and replayed instead of re-executing the command.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class CachedResponse:
    """Response message of a completed command."""
    message: Dict[str, Any]
    stored_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.stored_at >= ttl


class IdempotencyCache:
    """
    Process-local response cache with TTL and a size bound.

    Oldest entries are evicted first once ``max_entries`` is reached.
    """

    def __init__(
        self,
        ttl: float = 600.0,
        max_entries: int = 10_000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CachedResponse]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Optional[str]) -> Optional[Dict[str, Any]]:
        if not key:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(now, self.ttl):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return dict(entry.message)

    def put(self, key: Optional[str], message: Dict[str, Any]) -> None:
        if not key:
            return
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CachedResponse(message=dict(message), stored_at=self._clock())
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed.

        Entries are kept in store order, so only the expired head is visited.
        """
        now = self._clock()
        removed = 0
        with self._lock:
            while self._entries:
                oldest = next(iter(self._entries.values()))
                if not oldest.is_expired(now, self.ttl):
                    break
                self._entries.popitem(last=False)
                removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
