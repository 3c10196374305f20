"""
Content store interface.

The sync bridge never owns content. It reads and writes records through a
``ContentStore`` supplied by the host, and the host calls the notifier hooks
around every mutation it performs.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol


class LifecycleHooks(Protocol):
    """Callbacks a content store fires around its mutations."""

    async def after_create(self, event: Any) -> Any: ...

    async def after_update(self, event: Any) -> Any: ...

    async def before_delete(self, event: Any) -> Any: ...

    async def after_delete(self, event: Any) -> Any: ...


class ContentStore(ABC):
    """
    Record persistence for the watched entity kinds.

    ``actor_id`` is the acting user of a mutation, None for system writes.
    ``meta`` travels with the mutation to the lifecycle hooks, which is how
    the provenance marker of a sync command reaches the notifier.
    """

    def __init__(self):
        self._hooks: List[LifecycleHooks] = []

    def subscribe(self, hooks: LifecycleHooks) -> None:
        """Register lifecycle hooks fired around every mutation."""
        self._hooks.append(hooks)

    @abstractmethod
    async def create(
        self,
        entity: str,
        data: Dict[str, Any],
        *,
        actor_id: Optional[Any] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert a record and return it with its assigned id."""
        pass

    @abstractmethod
    async def find_one(self, entity: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Return the record or None."""
        pass

    @abstractmethod
    async def update(
        self,
        entity: str,
        record_id: Any,
        data: Dict[str, Any],
        *,
        actor_id: Optional[Any] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Apply ``data`` to an existing record and return the updated record."""
        pass

    @abstractmethod
    async def delete(
        self,
        entity: str,
        record_id: Any,
        *,
        actor_id: Optional[Any] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Remove a record and return what was removed."""
        pass

    @abstractmethod
    async def delete_many(
        self,
        entity: str,
        record_ids: List[Any],
        *,
        actor_id: Optional[Any] = None,
    ) -> int:
        """Remove every listed record in one bulk operation; returns how many."""
        pass
