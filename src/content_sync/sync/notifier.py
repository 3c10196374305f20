"""
Outbound change notifier.

Hooks into the create, update, delete-before and delete-after callbacks of
every watched entity kind, classifies the mutation, consults the operation
tracker and publishes change events to the broker.

Notification is best effort: nothing raised while building or publishing an
event escapes a hook, so a broker outage never blocks or rolls back the
content mutation that triggered it.
"""

from typing import TYPE_CHECKING, Any, Dict, Optional

from .entities import EntityProfile, get_profile
from .models import (
    SYSTEM_ACTOR,
    ChangeEvent,
    ChangeVerb,
    DeleteStaging,
    MutationEvent,
    UpdateKind,
    utcnow,
)
from .tracker import OperationTracker
from ..transport.base import BrokerTransport
from ..utils.config import QueueConfig
from ..utils.errors import NotificationError, PublishError, describe_error
from ..utils.logging import get_logger

if TYPE_CHECKING:
    from ..store.base import ContentStore


logger = get_logger("content-sync.notifier")


class ChangeNotifier:
    """
    Lifecycle hooks for the watched entity kinds.

    The tracker is owned by the caller and shared by every hook invocation;
    the content store is only used for best-effort lookups before deletes.
    """

    def __init__(
        self,
        transport: BrokerTransport,
        tracker: OperationTracker,
        store: Optional["ContentStore"] = None,
        queues: Optional[QueueConfig] = None,
    ):
        self.transport = transport
        self.tracker = tracker
        self.store = store
        self.queues = queues or QueueConfig()
        self._stats = {
            "published": 0,
            "suppressed": 0,
            "failed": 0,
        }

    # Hooks

    async def after_create(self, event: MutationEvent) -> Optional[ChangeEvent]:
        self.tracker.sweep()
        record = event.result or {}
        record_id = record.get("id")

        if event.actor_id is None:
            # Cascade side effect of a publish, or some other system write
            self.tracker.register_related(record_id)
            self._suppressed("system_create", event, record_id)
            return None

        if event.is_external:
            self._suppressed("external_sync_create", event, record_id)
            return None

        profile = get_profile(event.entity)
        fields = profile.select_fields(record)
        fields["createdAt"] = record.get("createdAt")

        return await self._emit(
            profile,
            ChangeVerb.CREATED,
            record_id=record_id,
            user_id=record.get("userId"),
            fields=fields,
            triggered_by=str(event.actor_id),
        )

    async def after_update(self, event: MutationEvent) -> Optional[ChangeEvent]:
        self.tracker.sweep()
        record = event.result
        if record is None:
            logger.error("update_without_result", entity=event.entity.value)
            return None

        record_id = record.get("id")
        if event.is_external:
            self._suppressed("external_sync_update", event, record_id)
            return None

        changed = event.changed_fields
        is_publish = "publishedAt" in changed and record.get("publishedAt") is not None
        if is_publish and event.actor_id is not None:
            self.tracker.begin_publish_operation(record_id)

        profile = get_profile(event.entity)
        fields = profile.select_fields(record)
        fields["updatedAt"] = record.get("updatedAt")

        return await self._emit(
            profile,
            ChangeVerb.UPDATED,
            record_id=record_id,
            user_id=record.get("userId"),
            fields=fields,
            triggered_by=self._triggered_by(event),
            updated_fields=tuple(changed),
            operation_type=UpdateKind.PUBLISH if is_publish else UpdateKind.UPDATE,
        )

    async def before_delete(self, event: MutationEvent) -> None:
        self.tracker.sweep()
        target = event.delete_target()
        if target is None:
            logger.error(
                "delete_target_unresolved",
                entity=event.entity.value,
                params=list(event.params.keys())
            )
            return

        if event.actor_id is None:
            for record_id in target.ids:
                self.tracker.register_related(record_id)

        if target.bulk:
            logger.info("bulk_delete_detected", entity=event.entity.value, ids=target.ids)
            staging = DeleteStaging(bulk=True)
            for record_id in target.ids:
                snapshot = await self._fetch(event, record_id)
                staging.records.append(snapshot if snapshot is not None else {"id": record_id})
            event.staging = staging
            return

        record_id = target.ids[0]
        if event.actor_id is None or self.tracker.is_suppressed(record_id):
            event.staging = DeleteStaging(bulk=False, skip=True)
            self._suppressed("system_delete", event, record_id)
            return

        staging = DeleteStaging(bulk=False)
        snapshot = await self._fetch(event, record_id)
        if snapshot is not None:
            staging.records.append(snapshot)
        event.staging = staging

    async def after_delete(self, event: MutationEvent) -> int:
        """Emit deletion events for whatever ``before_delete`` staged; returns how many."""
        self.tracker.sweep()
        staging, event.staging = event.staging, None
        profile = get_profile(event.entity)
        triggered_by = self._triggered_by(event)

        if staging is not None and staging.bulk:
            if event.actor_id is None:
                for snapshot in staging.records:
                    self.tracker.register_related(snapshot.get("id"))

            sent = 0
            for snapshot in staging.records:
                record_id = snapshot.get("id")
                if self.tracker.is_suppressed(record_id):
                    self._suppressed("cascade_delete", event, record_id)
                    continue
                if await self._emit_deleted(profile, snapshot, record_id, triggered_by):
                    sent += 1
            return sent

        target = event.delete_target()
        if target is not None and target.bulk:
            # Bulk delete whose before-hook staged nothing
            return 0
        if staging is not None and staging.skip:
            return 0

        record_id = target.ids[0] if target is not None else None
        if staging is not None and staging.records:
            snapshot = staging.records[0]
            record_id = snapshot.get("id", record_id)
        else:
            snapshot = {"id": record_id}

        if record_id is None:
            logger.error("delete_target_unresolved", entity=event.entity.value)
            record_id = "unknown"
            snapshot = {"id": record_id}

        if event.actor_id is None:
            self.tracker.register_related(record_id)

        if self.tracker.is_suppressed(record_id):
            self._suppressed("cascade_delete", event, record_id)
            return 0

        return 1 if await self._emit_deleted(profile, snapshot, record_id, triggered_by) else 0

    # Internals

    async def _fetch(self, event: MutationEvent, record_id: Any) -> Optional[Dict[str, Any]]:
        """Best-effort snapshot of a record that is about to disappear."""
        if self.store is None:
            return None
        try:
            record = await self.store.find_one(event.entity, record_id)
        except Exception as e:
            logger.error(
                "delete_snapshot_failed",
                entity=event.entity.value,
                record_id=record_id,
                error=describe_error(e)
            )
            return None

        if record is None:
            logger.info("delete_snapshot_missing", entity=event.entity.value, record_id=record_id)
        return record

    async def _emit_deleted(
        self,
        profile: EntityProfile,
        snapshot: Dict[str, Any],
        record_id: Any,
        triggered_by: str,
    ) -> bool:
        user_id = snapshot.get("userId")
        event = await self._emit(
            profile,
            ChangeVerb.DELETED,
            record_id=record_id,
            user_id=user_id if user_id is not None else "unknown",
            fields=profile.deletion_fields(snapshot),
            triggered_by=triggered_by,
        )
        return event is not None

    async def _emit(
        self,
        profile: EntityProfile,
        verb: ChangeVerb,
        *,
        record_id: Any,
        user_id: Any,
        fields: Dict[str, Any],
        triggered_by: str,
        updated_fields: tuple = (),
        operation_type: Optional[UpdateKind] = None,
    ) -> Optional[ChangeEvent]:
        queue = profile.queue(self.queues, verb)
        try:
            change = ChangeEvent(
                entity=profile.kind,
                verb=verb,
                record_id=record_id,
                user_id=user_id,
                fields=fields,
                triggered_by=triggered_by,
                timestamp=utcnow(),
                updated_fields=updated_fields,
                operation_type=operation_type,
            )
            if not await self.transport.assert_queue(queue):
                raise NotificationError(f"Queue {queue} unavailable for {profile.label} {record_id}")
            if not await self.transport.publish(queue, change.to_message()):
                raise PublishError(f"Broker rejected {verb.value} event for {profile.label} {record_id}")
        except Exception as e:
            self._stats["failed"] += 1
            logger.error(
                "change_notification_failed",
                entity=profile.kind.value,
                verb=verb.value,
                record_id=record_id,
                error=describe_error(e)
            )
            return None

        self._stats["published"] += 1
        logger.info(
            "change_notification_sent",
            entity=profile.kind.value,
            verb=verb.value,
            record_id=record_id,
            queue=queue,
            operation_type=operation_type.value if operation_type else None
        )
        return change

    def _suppressed(self, reason: str, event: MutationEvent, record_id: Any) -> None:
        self._stats["suppressed"] += 1
        logger.info(
            "change_notification_suppressed",
            reason=reason,
            entity=event.entity.value,
            record_id=record_id
        )

    @staticmethod
    def _triggered_by(event: MutationEvent) -> str:
        return str(event.actor_id) if event.actor_id is not None else SYSTEM_ACTOR

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
