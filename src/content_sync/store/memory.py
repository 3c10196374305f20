"""
In-process content store.

Keeps records in dictionaries and fires the lifecycle hooks the way a real
content store does, including the shared event instance across the before
and after callbacks of one delete. Used by tests and local runs.
"""

import copy
import itertools
from typing import Any, Dict, List, Optional

from .base import ContentStore
from ..sync.models import EntityKind, MutationEvent, utcnow
from ..utils.errors import RecordNotFoundError
from ..utils.logging import get_logger


logger = get_logger("content-sync.store")


def _persistable(data: Dict[str, Any]) -> Dict[str, Any]:
    # Mutation metadata rides along with the data but is never stored
    return {k: copy.deepcopy(v) for k, v in data.items() if k != "meta"}


class InMemoryContentStore(ContentStore):
    """Dictionary-backed ``ContentStore`` with integer ids."""

    def __init__(self):
        super().__init__()
        self._records: Dict[EntityKind, Dict[Any, Dict[str, Any]]] = {
            kind: {} for kind in EntityKind
        }
        self._ids = itertools.count(1)

    def _table(self, entity: str) -> Dict[Any, Dict[str, Any]]:
        return self._records[EntityKind(entity)]

    def _lookup(self, entity: str, record_id: Any) -> Optional[Dict[str, Any]]:
        table = self._table(entity)
        if record_id in table:
            return table[record_id]
        # Ids arrive as strings from the wire
        try:
            return table.get(int(record_id))
        except (TypeError, ValueError):
            return None

    def all(self, entity: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._table(entity).values()]

    async def _fire(self, hook: str, event: MutationEvent) -> None:
        for hooks in self._hooks:
            await getattr(hooks, hook)(event)

    async def create(
        self,
        entity: str,
        data: Dict[str, Any],
        *,
        actor_id: Optional[Any] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        now = utcnow().isoformat()
        record = _persistable(data)
        record.update(id=next(self._ids), createdAt=now, updatedAt=now)
        self._table(entity)[record["id"]] = record

        logger.debug("record_created", entity=entity, record_id=record["id"])
        params: Dict[str, Any] = {"data": dict(data)}
        if meta is not None:
            params["meta"] = meta
        await self._fire(
            "after_create",
            MutationEvent.with_actor(
                EntityKind(entity),
                actor_id,
                action="afterCreate",
                params=params,
                result=copy.deepcopy(record),
            ),
        )
        return copy.deepcopy(record)

    async def find_one(self, entity: str, record_id: Any) -> Optional[Dict[str, Any]]:
        record = self._lookup(entity, record_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(
        self,
        entity: str,
        record_id: Any,
        data: Dict[str, Any],
        *,
        actor_id: Optional[Any] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        record = self._lookup(entity, record_id)
        if record is None:
            raise RecordNotFoundError(EntityKind(entity).value, record_id)

        record.update(_persistable(data))
        record["updatedAt"] = utcnow().isoformat()

        logger.debug("record_updated", entity=entity, record_id=record["id"], fields=list(data))
        params: Dict[str, Any] = {"where": {"id": record["id"]}, "data": dict(data)}
        if meta is not None:
            params["meta"] = meta
        await self._fire(
            "after_update",
            MutationEvent.with_actor(
                EntityKind(entity),
                actor_id,
                action="afterUpdate",
                params=params,
                result=copy.deepcopy(record),
            ),
        )
        return copy.deepcopy(record)

    async def delete(
        self,
        entity: str,
        record_id: Any,
        *,
        actor_id: Optional[Any] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        record = self._lookup(entity, record_id)
        if record is None:
            raise RecordNotFoundError(EntityKind(entity).value, record_id)

        params: Dict[str, Any] = {"where": {"id": record["id"]}}
        if meta is not None:
            params["meta"] = meta
        event = MutationEvent.with_actor(
            EntityKind(entity), actor_id, action="delete", params=params
        )

        await self._fire("before_delete", event)
        removed = self._table(entity).pop(record["id"])
        event.result = copy.deepcopy(removed)
        logger.debug("record_deleted", entity=entity, record_id=removed["id"])
        await self._fire("after_delete", event)
        return copy.deepcopy(removed)

    async def delete_many(
        self,
        entity: str,
        record_ids: List[Any],
        *,
        actor_id: Optional[Any] = None,
    ) -> int:
        existing = [
            record["id"]
            for record in (self._lookup(entity, rid) for rid in record_ids)
            if record is not None
        ]
        event = MutationEvent.with_actor(
            EntityKind(entity),
            actor_id,
            action="deleteMany",
            params={"where": {"id": {"$in": existing}}},
        )

        await self._fire("before_delete", event)
        table = self._table(entity)
        for record_id in existing:
            table.pop(record_id, None)
        event.result = {"count": len(existing)}
        logger.debug("records_deleted", entity=entity, count=len(existing))
        await self._fire("after_delete", event)
        return len(existing)
