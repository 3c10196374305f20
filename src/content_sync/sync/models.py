"""
Data model shared by the outbound and inbound sync paths.

Outbound: ``MutationEvent`` (what the content store hands to the hooks),
``DeleteStaging`` and the immutable ``ChangeEvent``.
Inbound: the ``SyncCommand`` envelope and its ``SyncResponse``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from ..utils.errors import CommandParseError


SYSTEM_ACTOR = "system"
PROVENANCE_SOURCE = "external_sync"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityKind(str, Enum):
    """Watched content types."""
    COURSE = "course"
    CHALLENGE = "challenge"


class ChangeVerb(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class UpdateKind(str, Enum):
    """Classification of an update event."""
    UPDATE = "update"
    PUBLISH = "publish"


class OperationType(str, Enum):
    """Sync command operation types."""
    CREATE_COURSE = "CREATE_COURSE"
    UPDATE_COURSE = "UPDATE_COURSE"
    DELETE_COURSE = "DELETE_COURSE"
    CREATE_CHALLENGE = "CREATE_CHALLENGE"
    UPDATE_CHALLENGE = "UPDATE_CHALLENGE"
    DELETE_CHALLENGE = "DELETE_CHALLENGE"


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


def provenance_meta() -> Dict[str, str]:
    """Marker attached to every mutation applied on behalf of a sync command."""
    return {"source": PROVENANCE_SOURCE}


def _is_external(meta: Any) -> bool:
    return isinstance(meta, Mapping) and meta.get("source") == PROVENANCE_SOURCE


@dataclass
class DeleteTarget:
    """Ids addressed by a delete, and whether they came from an ``$in`` filter."""
    ids: List[Any]
    bulk: bool = False


@dataclass
class DeleteStaging:
    """Snapshots captured before a delete, consumed after it."""
    bulk: bool
    records: List[Dict[str, Any]] = field(default_factory=list)
    skip: bool = False


@dataclass
class MutationEvent:
    """
    A lifecycle callback from the content store.

    The host passes the same instance to ``before_delete`` and
    ``after_delete`` so delete staging is scoped to one logical delete.
    """
    entity: EntityKind
    action: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    state: Dict[str, Any] = field(default_factory=dict)
    staging: Optional[DeleteStaging] = None

    @property
    def actor_id(self) -> Optional[Any]:
        """Id of the acting user, None for system-originated mutations."""
        user = self.state.get("user")
        if isinstance(user, Mapping):
            actor = user.get("id")
            return actor if actor not in (None, "") else None
        return None

    @property
    def changed_fields(self) -> List[str]:
        data = self.params.get("data")
        return [k for k in data if k != "meta"] if isinstance(data, Mapping) else []

    @property
    def is_external(self) -> bool:
        """True when the mutation carries the provenance marker."""
        if _is_external(self.params.get("meta")):
            return True
        data = self.params.get("data")
        return isinstance(data, Mapping) and _is_external(data.get("meta"))

    def delete_target(self) -> Optional[DeleteTarget]:
        """Extract the delete target from ``where.id`` or ``id``."""
        where = self.params.get("where")
        if isinstance(where, Mapping) and where.get("id") is not None:
            target = where["id"]
            if isinstance(target, Mapping):
                if "$in" in target:
                    return DeleteTarget(ids=list(target["$in"] or []), bulk=True)
                return None
            return DeleteTarget(ids=[target])

        if self.params.get("id") is not None:
            return DeleteTarget(ids=[self.params["id"]])

        return None

    @classmethod
    def with_actor(cls, entity: EntityKind, actor_id: Optional[Any], **kwargs) -> "MutationEvent":
        state = {"user": {"id": actor_id}} if actor_id is not None else {}
        return cls(entity=entity, state=state, **kwargs)


@dataclass(frozen=True)
class ChangeEvent:
    """Outbound notification for one create/update/delete. Immutable once built."""
    entity: EntityKind
    verb: ChangeVerb
    record_id: Any
    user_id: Any
    fields: Mapping[str, Any]
    triggered_by: str
    timestamp: datetime = field(default_factory=utcnow)
    updated_fields: Tuple[str, ...] = ()
    operation_type: Optional[UpdateKind] = None

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "updated_fields", tuple(self.updated_fields))

    def to_message(self) -> Dict[str, Any]:
        """JSON envelope published to the entity's queue."""
        message: Dict[str, Any] = {"id": self.record_id, "userId": self.user_id}
        message.update(self.fields)

        if self.verb is ChangeVerb.UPDATED:
            message["updatedFields"] = list(self.updated_fields)
            message["operationType"] = (self.operation_type or UpdateKind.UPDATE).value
        elif self.verb is ChangeVerb.DELETED:
            message["deletedAt"] = self.timestamp.isoformat()

        message["triggeredBy"] = self.triggered_by
        return message


class SyncCommand(BaseModel):
    """Inbound command envelope; ``data`` is validated per operation later."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    correlation_id: str = Field(alias="correlationId", min_length=1)
    operation_type: str = Field(alias="operationType", min_length=1)
    user_id: Optional[Any] = Field(default=None, alias="userId")
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[Any] = None
    backend_id: Optional[Any] = Field(default=None, alias="backendId")

    @classmethod
    def from_body(cls, body: bytes) -> "SyncCommand":
        """Decode and validate a delivery body.

        Raises:
            CommandParseError: the body is not a well-formed command envelope
        """
        try:
            raw = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CommandParseError(f"Command body is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise CommandParseError("Command body must be a JSON object")

        if raw.get("data") is None:
            raw["data"] = {}

        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise CommandParseError(f"Malformed sync command: {problems}") from e


class SyncResponse(BaseModel):
    """Reply correlated to exactly one command delivery."""

    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(alias="correlationId")
    operation_type: str = Field(alias="operationType")
    status: ResponseStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    backend_id: Optional[Any] = Field(default=None, alias="backendId")

    @classmethod
    def success(cls, command: SyncCommand, data: Any) -> "SyncResponse":
        return cls(
            correlation_id=command.correlation_id,
            operation_type=command.operation_type,
            status=ResponseStatus.SUCCESS,
            data=data,
            backend_id=command.backend_id,
        )

    @classmethod
    def failure(cls, command: SyncCommand, message: str) -> "SyncResponse":
        return cls(
            correlation_id=command.correlation_id,
            operation_type=command.operation_type,
            status=ResponseStatus.ERROR,
            error=message,
            backend_id=command.backend_id,
        )

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
