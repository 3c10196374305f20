"""
Per-entity sync profiles.

A profile names the queues of an entity kind, selects which record
attributes travel in its change events, and owns the validated payload
models its inbound commands are checked against.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import ChangeVerb, EntityKind
from .normalization import ensure_blocks, map_course_level, normalize_industry_partnership
from ..utils.config import QueueConfig


RecordId = Union[int, str]

UNKNOWN = "unknown"


class SyncPayload(BaseModel):
    """Base for command payloads; unknown fields pass through to the store."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[RecordId] = None
    user_id: Optional[Any] = Field(default=None, alias="userId")

    def to_store_data(self) -> Dict[str, Any]:
        """Fields as the content store expects them, without the record id."""
        data = self.model_dump(by_alias=True, exclude_unset=True)
        data.pop("id", None)
        return data


class CoursePayload(SyncPayload):
    target_industry_partnership: Optional[str] = Field(
        default=None, alias="targetIndustryPartnership"
    )
    description: Optional[Any] = None
    course_level: Optional[str] = Field(default=None, alias="courseLevel")
    level: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def map_legacy_level(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("level") and not data.get("courseLevel"):
            data = {**data, "courseLevel": map_course_level(data["level"])}
        return data

    @field_validator("target_industry_partnership")
    @classmethod
    def normalize_partnership(cls, v):
        return normalize_industry_partnership(v) if v else v

    @field_validator("description")
    @classmethod
    def description_blocks(cls, v):
        return ensure_blocks(v)


class ChallengePayload(SyncPayload):
    detail_description: Optional[Any] = Field(default=None, alias="detailDescription")
    aim: Optional[Any] = Field(default=None, alias="Aim")
    potential_solution: Optional[Any] = Field(default=None, alias="potentialSolution")
    additional_information: Optional[Any] = Field(default=None, alias="additionalInformation")

    @field_validator(
        "detail_description", "aim", "potential_solution", "additional_information"
    )
    @classmethod
    def rich_text_blocks(cls, v):
        return ensure_blocks(v)


def _flatten_relation(value: Any) -> Any:
    """``{data: [{id, attributes: {name}}]}`` becomes ``[{id, name}]``."""
    if isinstance(value, Mapping) and isinstance(value.get("data"), list):
        return [
            {"id": item.get("id"), "name": (item.get("attributes") or {}).get("name")}
            for item in value["data"]
            if isinstance(item, Mapping)
        ]
    return value


@dataclass(frozen=True)
class EntityProfile:
    """Everything the sync paths need to know about one entity kind."""
    kind: EntityKind
    label: str
    display_field: str
    event_fields: Tuple[str, ...]
    payload_model: Type[SyncPayload]
    defaults: Tuple[Tuple[str, Any], ...] = ()
    fallbacks: Tuple[Tuple[str, str], ...] = ()
    relation_fields: Tuple[str, ...] = ()

    def queue(self, queues: QueueConfig, verb: ChangeVerb) -> str:
        return getattr(queues, f"{self.kind.value}_{verb.value}")

    def select_fields(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Event attributes for a created/updated record."""
        defaults = dict(self.defaults)
        fallbacks = dict(self.fallbacks)
        selected: Dict[str, Any] = {}

        for name in self.event_fields:
            value = record.get(name)
            if value is None and name in fallbacks:
                value = record.get(fallbacks[name])
            if value is None and name in defaults:
                value = defaults[name]
            if name in self.relation_fields:
                value = _flatten_relation(value)
            selected[name] = value

        selected["publishStatus"] = "published" if record.get("publishedAt") else "draft"
        return selected

    def deletion_fields(self, snapshot: Mapping[str, Any]) -> Dict[str, Any]:
        """Display attributes for a deleted record; ``unknown`` when not captured."""
        value = snapshot.get(self.display_field)
        return {self.display_field: value if value is not None else UNKNOWN}


COURSE = EntityProfile(
    kind=EntityKind.COURSE,
    label="Course",
    display_field="code",
    event_fields=(
        "code",
        "name",
        "expectedEnrollment",
        "description",
        "assessmentRedesign",
        "targetIndustryPartnership",
        "preferredPartnerRepresentative",
        "startDate",
        "endDate",
        "isActive",
        "status",
        "country",
    ),
    payload_model=CoursePayload,
    fallbacks=(("status", "courseStatus"),),
    relation_fields=("targetIndustryPartnership",),
)

CHALLENGE = EntityProfile(
    kind=EntityKind.CHALLENGE,
    label="Challenge",
    display_field="name",
    event_fields=(
        "name",
        "shortDescription",
        "targetAcademicPartnership",
        "studentLevel",
        "startDate",
        "endDate",
        "isActive",
        "challengeStatus",
        "country",
    ),
    payload_model=ChallengePayload,
    defaults=(("targetAcademicPartnership", ""),),
)

PROFILES: Dict[EntityKind, EntityProfile] = {
    EntityKind.COURSE: COURSE,
    EntityKind.CHALLENGE: CHALLENGE,
}


def get_profile(kind: EntityKind) -> EntityProfile:
    return PROFILES[EntityKind(kind)]
