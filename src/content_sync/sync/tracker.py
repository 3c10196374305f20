"""
Time-windowed registry of in-flight publish operations.

Publishing a record makes the content store run its own cascade of creates
and deletes (relation population, draft cleanup). Those cascade writes carry
no acting user. While a publish operation is live, every such id is recorded
against it so the notifier can suppress the echoes of the cascade.

This is a heuristic: the content store exposes no operation context, so
causality is approximated by "no acting user" plus recency.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional, Set

from ..utils.logging import get_logger


logger = get_logger("content-sync.tracker")

DEFAULT_WINDOW_MS = 30_000


def _key(record_id: Any) -> Hashable:
    # Hosts hand ids over as int or str depending on the call site
    return str(record_id)


@dataclass
class TrackedOperation:
    """One live publish operation and the ids its cascade touched."""
    operation_id: str
    record_id: Any
    created_at: float
    related_ids: Set[Hashable] = field(default_factory=set)


class OperationTracker:
    """
    Registry of live publish operations.

    All state is guarded by one re-entrant lock so hooks running on different
    threads can share a tracker. Eviction is lazy: ``sweep`` runs at the top
    of every notifier hook, there is no background timer.
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        clock: Optional[Callable[[], float]] = None,
        wall_clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            window_ms: Lifetime of an operation in milliseconds
            clock: Monotonic clock in seconds, used for eviction
            wall_clock: Wall clock in seconds, used only to build operation ids
        """
        self.window_ms = window_ms
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or time.time
        self._operations: Dict[str, TrackedOperation] = {}
        self._lock = threading.RLock()

    def begin_publish_operation(self, record_id: Any) -> TrackedOperation:
        """Register a publish of ``record_id`` started by an acting user."""
        operation_id = f"{record_id}-{int(self._wall_clock() * 1000)}"
        with self._lock:
            # Two publishes of one record inside the same millisecond share an entry
            existing = self._operations.get(operation_id)
            if existing is not None:
                return existing
            operation = TrackedOperation(
                operation_id=operation_id,
                record_id=record_id,
                created_at=self._clock(),
            )
            self._operations[operation_id] = operation

        logger.info("publish_operation_registered", operation_id=operation_id)
        return operation

    def register_related(self, record_id: Any) -> int:
        """Attach ``record_id`` to every live operation; returns how many."""
        key = _key(record_id)
        with self._lock:
            for operation in self._operations.values():
                operation.related_ids.add(key)
            count = len(self._operations)

        if count:
            logger.debug("related_id_registered", record_id=record_id, operations=count)
        return count

    def is_suppressed(self, record_id: Any) -> bool:
        """True if a live, unexpired operation lists ``record_id`` as related."""
        key = _key(record_id)
        now = self._clock()
        with self._lock:
            return any(
                key in operation.related_ids
                for operation in self._operations.values()
                if not self._expired(operation, now)
            )

    def sweep(self) -> int:
        """Evict operations older than the window; returns how many were evicted."""
        now = self._clock()
        with self._lock:
            expired = [
                operation_id
                for operation_id, operation in self._operations.items()
                if self._expired(operation, now)
            ]
            for operation_id in expired:
                del self._operations[operation_id]

        if expired:
            logger.debug("publish_operations_evicted", operation_ids=expired)
        return len(expired)

    def _expired(self, operation: TrackedOperation, now: float) -> bool:
        return (now - operation.created_at) * 1000 >= self.window_ms

    def live_operations(self) -> List[TrackedOperation]:
        with self._lock:
            return list(self._operations.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)
