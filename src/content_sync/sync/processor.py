"""
Inbound sync command processor.

Consumes commands from the request queue, applies them to the content store
and answers every accepted delivery with exactly one correlated response.
Business failures become error responses; only unparseable deliveries are
requeued, and those are dead-lettered once they keep coming back.
"""

import hashlib
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from .entities import CHALLENGE, COURSE, EntityProfile, SyncPayload
from .idempotency import IdempotencyCache
from .models import (
    ChangeVerb,
    OperationType,
    SyncCommand,
    SyncResponse,
    provenance_meta,
    utcnow,
)
from ..transport.base import BrokerTransport, Delivery
from ..utils.config import ProcessorConfig, QueueConfig
from ..utils.errors import (
    CommandParseError,
    ErrorContext,
    UnsupportedOperationError,
    ValidationError,
    describe_error,
)
from ..utils.logging import get_logger

if TYPE_CHECKING:
    from ..store.base import ContentStore


logger = get_logger("content-sync.processor")

Handler = Callable[[SyncCommand], Awaitable[Dict[str, Any]]]


def _describe_validation(e: PydanticValidationError) -> ValidationError:
    """First problem of a payload validation failure, as our ValidationError."""
    err = e.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ())) or "data"
    cause = (err.get("ctx") or {}).get("error")
    message = str(cause) if cause is not None else f"{field}: {err.get('msg')}"
    return ValidationError(field, err.get("input"), message)


class CommandProcessor:
    """Dispatches sync commands to the per-entity create/update/delete handlers."""

    def __init__(
        self,
        transport: BrokerTransport,
        store: "ContentStore",
        queues: Optional[QueueConfig] = None,
        config: Optional[ProcessorConfig] = None,
        cache: Optional[IdempotencyCache] = None,
    ):
        self.transport = transport
        self.store = store
        self.queues = queues or QueueConfig()
        self.config = config or ProcessorConfig()
        self.cache = cache or IdempotencyCache(
            ttl=self.config.idempotency_ttl,
            max_entries=self.config.idempotency_max_entries,
        )
        self.consumer_tag: Optional[str] = None
        self._parse_failures: "OrderedDict[str, int]" = OrderedDict()
        self._handlers: Dict[OperationType, Handler] = {
            OperationType.CREATE_COURSE: lambda cmd: self._create(COURSE, cmd),
            OperationType.UPDATE_COURSE: lambda cmd: self._update(COURSE, cmd),
            OperationType.DELETE_COURSE: lambda cmd: self._delete(COURSE, cmd),
            OperationType.CREATE_CHALLENGE: lambda cmd: self._create(CHALLENGE, cmd),
            OperationType.UPDATE_CHALLENGE: lambda cmd: self._update(CHALLENGE, cmd),
            OperationType.DELETE_CHALLENGE: lambda cmd: self._delete(CHALLENGE, cmd),
        }
        self._stats = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "replayed": 0,
            "parse_failures": 0,
            "dead_lettered": 0,
            "response_failures": 0,
        }

    async def start(self) -> bool:
        """Declare the command queues and start consuming requests."""
        for queue in (self.queues.sync_requests, self.queues.sync_responses, self.queues.dead_letter):
            if not await self.transport.assert_queue(queue):
                logger.error("queue_declare_failed", queue=queue)
                return False

        self.consumer_tag = await self.transport.consume(
            self.queues.sync_requests, self.handle_delivery, prefetch=self.config.prefetch
        )
        if self.consumer_tag is None:
            return False

        logger.info("command_processor_started", queue=self.queues.sync_requests)
        return True

    async def stop(self) -> None:
        if self.consumer_tag is not None:
            await self.transport.cancel(self.consumer_tag)
            self.consumer_tag = None

    async def handle_delivery(self, delivery: Delivery) -> None:
        """Settle one delivery: parse, apply, respond, ack."""
        self.cache.sweep()
        try:
            command = SyncCommand.from_body(delivery.body)
        except CommandParseError as e:
            await self._reject(delivery, e)
            return

        log = logger.bind(
            correlation_id=command.correlation_id,
            operation_type=command.operation_type
        )

        message = self.cache.get(command.correlation_id)
        if message is not None:
            self._stats["replayed"] += 1
            log.info("sync_command_replayed")
        else:
            message = (await self.process(command)).to_message()
            self.cache.put(command.correlation_id, message)

        if not await self.transport.publish(self.queues.sync_responses, message):
            # Redelivery is answered from the replay cache, never re-applied
            self._stats["response_failures"] += 1
            log.error("sync_response_publish_failed")
            await delivery.nack(requeue=True)
            return

        await delivery.ack()

    async def process(self, command: SyncCommand) -> SyncResponse:
        """Apply a command and build its response; never raises."""
        self._stats["processed"] += 1
        log = logger.bind(
            correlation_id=command.correlation_id,
            operation_type=command.operation_type
        )
        log.info("sync_command_received", user_id=command.user_id)

        try:
            data = await self.dispatch(command)
        except Exception as e:
            self._stats["failed"] += 1
            log.error("sync_command_failed", error=describe_error(e))
            return SyncResponse.failure(command, describe_error(e))

        self._stats["succeeded"] += 1
        log.info("sync_command_applied", record_id=data.get("id"))
        return SyncResponse.success(command, data)

    async def dispatch(self, command: SyncCommand) -> Dict[str, Any]:
        try:
            operation = OperationType(command.operation_type)
        except ValueError:
            raise UnsupportedOperationError(
                command.operation_type,
                context=ErrorContext(
                    correlation_id=command.correlation_id,
                    component="processor",
                    operation="dispatch"
                )
            )

        if command.user_id is not None and not command.data.get("userId"):
            command.data["userId"] = command.user_id

        return await self._handlers[operation](command)

    # Handlers

    async def _create(self, profile: EntityProfile, command: SyncCommand) -> Dict[str, Any]:
        payload = self._validate(profile, command.data)
        data = payload.to_store_data()
        data["publishedAt"] = utcnow().isoformat()
        data["meta"] = provenance_meta()

        record = await self.store.create(profile.kind, data, meta=provenance_meta())
        return {**record, "id": record["id"]}

    async def _update(self, profile: EntityProfile, command: SyncCommand) -> Dict[str, Any]:
        record_id = self._require_id(profile, command, ChangeVerb.UPDATED)
        payload = self._validate(profile, command.data)
        data = payload.to_store_data()
        data["meta"] = provenance_meta()

        record = await self.store.update(profile.kind, record_id, data, meta=provenance_meta())
        return {**record, "id": record["id"]}

    async def _delete(self, profile: EntityProfile, command: SyncCommand) -> Dict[str, Any]:
        record_id = self._require_id(profile, command, ChangeVerb.DELETED)
        await self.store.delete(profile.kind, record_id, meta=provenance_meta())
        return {"id": record_id, "deleted": True}

    @staticmethod
    def _require_id(profile: EntityProfile, command: SyncCommand, verb: ChangeVerb) -> Any:
        record_id = command.data.get("id")
        if record_id in (None, ""):
            action = "update" if verb is ChangeVerb.UPDATED else "delete"
            raise ValidationError(
                "id", record_id, f"{profile.label} ID is required for {action} operation"
            )
        return record_id

    @staticmethod
    def _validate(profile: EntityProfile, data: Dict[str, Any]) -> SyncPayload:
        try:
            return profile.payload_model.model_validate(data)
        except PydanticValidationError as e:
            raise _describe_validation(e) from e

    # Parse failures

    @staticmethod
    def _fingerprint(delivery: Delivery) -> str:
        return delivery.message_id or hashlib.sha256(delivery.body).hexdigest()

    async def _reject(self, delivery: Delivery, error: CommandParseError) -> None:
        """Requeue an unparseable delivery until it has failed too often, then dead-letter it."""
        self._stats["parse_failures"] += 1
        fingerprint = self._fingerprint(delivery)
        failures = self._parse_failures.pop(fingerprint, 0) + 1
        self._parse_failures[fingerprint] = failures
        # Fingerprints that never come back are forgotten oldest first
        while len(self._parse_failures) > self.config.parse_failure_max_entries:
            self._parse_failures.popitem(last=False)

        logger.warning(
            "sync_command_unparseable",
            fingerprint=fingerprint,
            failures=failures,
            error=describe_error(error)
        )

        if failures < self.config.max_parse_redeliveries:
            await delivery.nack(requeue=True)
            return

        dead_letter = self.queues.dead_letter
        if await self.transport.assert_queue(dead_letter) and \
                await self.transport.publish(dead_letter, delivery.body):
            self._parse_failures.pop(fingerprint, None)
            self._stats["dead_lettered"] += 1
            logger.error("sync_command_dead_lettered", fingerprint=fingerprint, queue=dead_letter)
            await delivery.ack()
        else:
            await delivery.nack(requeue=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "cached_responses": len(self.cache),
            "tracked_parse_failures": len(self._parse_failures),
            "consuming": self.consumer_tag is not None,
        }
