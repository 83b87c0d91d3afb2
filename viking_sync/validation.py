"""Schema validation boundary.

Every externally sourced payload passes through ``parse`` or
``parse_array`` before it reaches the local store. Schemas canonicalise
identifiers (numeric section/scout ids become ints, event/term ids become
strings), accept upstream's alternative field names, and drop unknown
fields. Members and FlexiData are the exception: their unknown fields are
custom columns and are kept verbatim.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, FrozenSet, Iterable, List, Optional, Type

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import RecordValidationError
from .observability import ErrorReporter
from .types import (
    Attendance,
    CoreMember,
    Event,
    FlexiData,
    FlexiList,
    FlexiStructure,
    MemberSection,
    RecordKind,
    Section,
    SharedEventMetadata,
    Term,
    UserInfo,
    person_type_for_patrol,
)

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"1", "y", "yes", "true", "t", "on"})
_FALSE_STRINGS = frozenset({"", "0", "n", "no", "false", "f", "off", "null"})


# =============================================================================
# Coercions
# =============================================================================


def _coerce_int_id(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("identifier must not be a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError(f"identifier is not integral: {value!r}")
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    raise ValueError(f"not a numeric identifier: {value!r}")


def _coerce_optional_int_id(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _coerce_int_id(value)


def _coerce_str_id(value: Any) -> str:
    if isinstance(value, bool):
        raise ValueError("identifier must not be a boolean")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValueError(f"not a valid identifier: {value!r}")


def _coerce_optional_str_id(value: Any) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _coerce_str_id(value)


def _coerce_text(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _coerce_optional_text(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return _coerce_text(value)


def _coerce_flag(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean flag: {value!r}")


def _coerce_opaque_map(value: Any) -> Dict[str, Any]:
    """Upstream sends ``[]`` for empty maps; lists of names become flag maps."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {str(item): True for item in value if not isinstance(item, (dict, list))}
    raise ValueError(f"expected a mapping, got {type(value).__name__}")


def _coerce_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return list(value.values())
    raise ValueError(f"expected a list, got {type(value).__name__}")


IntId = Annotated[int, BeforeValidator(_coerce_int_id)]
OptIntId = Annotated[Optional[int], BeforeValidator(_coerce_optional_int_id)]
StrId = Annotated[str, BeforeValidator(_coerce_str_id)]
OptStrId = Annotated[Optional[str], BeforeValidator(_coerce_optional_str_id)]
Text = Annotated[str, BeforeValidator(_coerce_text)]
OptText = Annotated[Optional[str], BeforeValidator(_coerce_optional_text)]
Flag = Annotated[bool, BeforeValidator(_coerce_flag)]
OpaqueMap = Annotated[Dict[str, Any], BeforeValidator(_coerce_opaque_map)]
LooseList = Annotated[List[Any], BeforeValidator(_coerce_list)]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


# =============================================================================
# Schemas
# =============================================================================


class _Schema(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_record(self) -> Any:
        raise NotImplementedError

    def dropped_fields(self) -> List[str]:
        """Unknown fields that will not survive into the record."""
        if type(self).passthrough_kind():
            return []
        known = known_field_names(type(self))
        return sorted(k for k in (self.model_extra or {}) if k not in known)

    def passthrough_fields(self) -> Dict[str, Any]:
        known = known_field_names(type(self))
        return {k: v for k, v in (self.model_extra or {}).items() if k not in known}

    @classmethod
    def passthrough_kind(cls) -> bool:
        """Kinds whose unknown fields are custom data rather than noise."""
        return False


class SectionSchema(_Schema):
    section_id: IntId = Field(validation_alias=_alias("section_id", "sectionid"))
    name: Text = Field(min_length=1, validation_alias=_alias("name", "sectionname"))
    section_type: OptText = Field(
        None, validation_alias=_alias("section_type", "type", "sectiontype", "section")
    )
    is_default: Flag = Field(False, validation_alias=_alias("is_default", "isDefault"))
    permissions: OpaqueMap = Field(default_factory=dict)

    def to_record(self) -> Section:
        return Section(
            section_id=self.section_id,
            name=self.name,
            section_type=self.section_type,
            is_default=self.is_default,
            permissions=dict(self.permissions),
        )


class TermSchema(_Schema):
    term_id: StrId = Field(validation_alias=_alias("term_id", "termid"))
    section_id: IntId = Field(validation_alias=_alias("section_id", "sectionid"))
    name: Text = Field(min_length=1)
    start_date: OptText = Field(None, validation_alias=_alias("start_date", "startdate"))
    end_date: OptText = Field(None, validation_alias=_alias("end_date", "enddate"))

    def to_record(self) -> Term:
        return Term(
            term_id=self.term_id,
            section_id=self.section_id,
            name=self.name,
            start_date=self.start_date,
            end_date=self.end_date,
        )


class EventSchema(_Schema):
    event_id: StrId = Field(validation_alias=_alias("event_id", "eventid"))
    section_id: IntId = Field(validation_alias=_alias("section_id", "sectionid"))
    name: Text = Field(min_length=1)
    term_id: OptStrId = Field(None, validation_alias=_alias("term_id", "termid"))
    # ISO forms (``*_g``) win over display forms when both are present
    start_date: OptText = Field(
        None, validation_alias=_alias("start_date", "startdate_g", "startdate", "date")
    )
    start_time: OptText = Field(None, validation_alias=_alias("start_time", "starttime"))
    end_date: OptText = Field(None, validation_alias=_alias("end_date", "enddate_g", "enddate"))
    location: OptText = None
    notes: OptText = None
    cost: OptText = None

    def to_record(self) -> Event:
        return Event(
            event_id=self.event_id,
            section_id=self.section_id,
            name=self.name,
            term_id=self.term_id,
            start_date=self.start_date,
            start_time=self.start_time,
            end_date=self.end_date,
            location=self.location,
            notes=self.notes,
            cost=self.cost,
        )


class AttendanceSchema(_Schema):
    event_id: StrId = Field(validation_alias=_alias("event_id", "eventid"))
    scout_id: IntId = Field(validation_alias=_alias("scout_id", "scoutid", "member_id"))
    section_id: OptIntId = Field(None, validation_alias=_alias("section_id", "sectionid"))
    first_name: OptText = Field(None, validation_alias=_alias("first_name", "firstname"))
    last_name: OptText = Field(None, validation_alias=_alias("last_name", "lastname"))
    attending: OptText = None
    patrol: OptText = None
    notes: OptText = None
    is_shared_section: Flag = False

    def to_record(self) -> Attendance:
        return Attendance(
            event_id=self.event_id,
            scout_id=self.scout_id,
            section_id=self.section_id,
            first_name=self.first_name,
            last_name=self.last_name,
            attending=self.attending,
            patrol=self.patrol,
            notes=self.notes,
            is_shared_section=self.is_shared_section,
        )


class SharedAttendanceSchema(AttendanceSchema):
    section_id: IntId = Field(validation_alias=_alias("section_id", "sectionid"))

    def to_record(self) -> Attendance:
        record = super().to_record()
        record.is_shared_section = True
        return record


class SharedEventMetadataSchema(_Schema):
    event_id: StrId = Field(validation_alias=_alias("event_id", "eventid"))
    is_shared: Flag = Field(False, validation_alias=_alias("is_shared", "is_shared_event"))
    owner_section_id: OptIntId = None
    sections: List[IntId] = Field(default_factory=list)
    updated_at: OptText = None

    def to_record(self) -> SharedEventMetadata:
        return SharedEventMetadata(
            event_id=self.event_id,
            is_shared=self.is_shared,
            owner_section_id=self.owner_section_id,
            sections=sorted(set(self.sections)),
            updated_at=self.updated_at,
        )


class MemberSectionSchema(_Schema):
    scout_id: OptIntId = None
    section_id: IntId = Field(validation_alias=_alias("section_id", "sectionid"))
    section_name: OptText = None
    person_type: OptText = None
    patrol: OptText = None
    patrol_id: OptIntId = None
    role: OptText = None
    started: OptText = None
    joined: OptText = None
    end_date: OptText = None
    active: Flag = True

    def to_membership(self, scout_id: int) -> MemberSection:
        return MemberSection(
            scout_id=scout_id,
            section_id=self.section_id,
            section_name=self.section_name,
            person_type=self.person_type or person_type_for_patrol(self.patrol_id),
            patrol=self.patrol,
            patrol_id=self.patrol_id,
            role=self.role,
            started=self.started,
            joined=self.joined,
            end_date=self.end_date,
            active=self.active,
        )


class MemberSchema(_Schema):
    scout_id: IntId = Field(validation_alias=_alias("scout_id", "scoutid", "member_id"))
    first_name: OptText = Field(None, validation_alias=_alias("first_name", "firstname"))
    last_name: OptText = Field(None, validation_alias=_alias("last_name", "lastname"))
    date_of_birth: OptText = Field(None, validation_alias=_alias("date_of_birth", "dob"))
    age: OptText = None
    photo_guid: OptText = None
    has_photo: Optional[Flag] = Field(None, validation_alias=_alias("has_photo", "pic"))
    contact_groups: OpaqueMap = Field(default_factory=dict)
    custom_data: OpaqueMap = Field(default_factory=dict)
    flattened_fields: OpaqueMap = Field(default_factory=dict)
    read_only: OpaqueMap = Field(default_factory=dict)
    # Membership fields as they arrive on a members-grid row
    section_id: OptIntId = Field(None, validation_alias=_alias("section_id", "sectionid"))
    section_name: OptText = Field(None, validation_alias=_alias("section_name", "sectionname"))
    person_type: OptText = None
    patrol: OptText = None
    patrol_id: OptIntId = Field(None, validation_alias=_alias("patrol_id", "patrolid"))
    role: OptText = None
    started: OptText = None
    joined: OptText = None
    end_date: OptText = None
    active: Flag = True
    sections: List[MemberSectionSchema] = Field(default_factory=list)

    @classmethod
    def passthrough_kind(cls) -> bool:
        return True

    def to_record(self) -> CoreMember:
        memberships: Dict[int, MemberSection] = {}
        for item in self.sections:
            memberships[item.section_id] = item.to_membership(self.scout_id)
        if self.section_id is not None:
            memberships[self.section_id] = MemberSection(
                scout_id=self.scout_id,
                section_id=self.section_id,
                section_name=self.section_name,
                person_type=self.person_type or person_type_for_patrol(self.patrol_id),
                patrol=self.patrol,
                patrol_id=self.patrol_id,
                role=self.role,
                started=self.started,
                joined=self.joined,
                end_date=self.end_date,
                active=self.active,
            )
        flattened = dict(self.flattened_fields)
        flattened.update(self.passthrough_fields())
        has_photo = self.has_photo if self.has_photo is not None else bool(self.photo_guid)
        return CoreMember(
            scout_id=self.scout_id,
            first_name=self.first_name,
            last_name=self.last_name,
            date_of_birth=self.date_of_birth,
            age=self.age,
            photo_guid=self.photo_guid,
            has_photo=has_photo,
            contact_groups=dict(self.contact_groups),
            custom_data=dict(self.custom_data),
            flattened_fields=flattened,
            read_only=dict(self.read_only),
            sections=[memberships[k] for k in sorted(memberships)],
        )


class FlexiListSchema(_Schema):
    extra_id: StrId = Field(validation_alias=_alias("extra_id", "extraid"))
    section_id: IntId = Field(validation_alias=_alias("section_id", "sectionid"))
    name: Text = Field(min_length=1)
    archived: Flag = False
    soft_deleted: Flag = False

    def to_record(self) -> FlexiList:
        return FlexiList(
            section_id=self.section_id,
            extra_id=self.extra_id,
            name=self.name,
            archived=self.archived,
            soft_deleted=self.soft_deleted,
        )


class FlexiStructureSchema(_Schema):
    extra_id: StrId = Field(validation_alias=_alias("extra_id", "extraid", "flexirecordid"))
    name: OptText = None
    section_id: OptIntId = Field(None, validation_alias=_alias("section_id", "sectionid"))
    term_id: OptStrId = Field(None, validation_alias=_alias("term_id", "termid"))
    config: Any = None
    structure: LooseList = Field(default_factory=list)
    updated_at: OptText = None

    def to_record(self) -> FlexiStructure:
        return FlexiStructure(
            extra_id=self.extra_id,
            name=self.name,
            section_id=self.section_id,
            term_id=self.term_id,
            config=self.config,
            structure=list(self.structure),
            updated_at=self.updated_at,
        )


class FlexiDataSchema(_Schema):
    extra_id: StrId = Field(validation_alias=_alias("extra_id", "extraid", "flexirecordid"))
    section_id: IntId = Field(validation_alias=_alias("section_id", "sectionid"))
    term_id: StrId = Field(validation_alias=_alias("term_id", "termid"))
    scout_id: IntId = Field(validation_alias=_alias("scout_id", "scoutid"))
    first_name: OptText = Field(None, validation_alias=_alias("first_name", "firstname"))
    last_name: OptText = Field(None, validation_alias=_alias("last_name", "lastname"))
    data: OpaqueMap = Field(default_factory=dict)

    @classmethod
    def passthrough_kind(cls) -> bool:
        return True

    def to_record(self) -> FlexiData:
        data = dict(self.data)
        data.update(self.passthrough_fields())
        return FlexiData(
            extra_id=self.extra_id,
            section_id=self.section_id,
            term_id=self.term_id,
            scout_id=self.scout_id,
            first_name=self.first_name,
            last_name=self.last_name,
            data=data,
        )


class UserInfoSchema(_Schema):
    user_id: OptIntId = Field(None, validation_alias=_alias("user_id", "userid"))
    first_name: OptText = Field(None, validation_alias=_alias("first_name", "firstname"))
    last_name: OptText = Field(None, validation_alias=_alias("last_name", "lastname"))
    email: OptText = None

    def to_record(self) -> UserInfo:
        return UserInfo(
            user_id=self.user_id,
            first_name=self.first_name,
            last_name=self.last_name,
            email=self.email,
        )


SCHEMAS: Dict[RecordKind, Type[_Schema]] = {
    RecordKind.SECTION: SectionSchema,
    RecordKind.TERM: TermSchema,
    RecordKind.EVENT: EventSchema,
    RecordKind.ATTENDANCE: AttendanceSchema,
    RecordKind.SHARED_ATTENDANCE: SharedAttendanceSchema,
    RecordKind.SHARED_EVENT_METADATA: SharedEventMetadataSchema,
    RecordKind.MEMBER: MemberSchema,
    RecordKind.FLEXI_LIST: FlexiListSchema,
    RecordKind.FLEXI_STRUCTURE: FlexiStructureSchema,
    RecordKind.FLEXI_DATA: FlexiDataSchema,
    RecordKind.USER_INFO: UserInfoSchema,
}

RECORD_TYPES = (
    Section,
    Term,
    Event,
    Attendance,
    SharedEventMetadata,
    CoreMember,
    FlexiList,
    FlexiStructure,
    FlexiData,
    UserInfo,
)

_KNOWN_FIELDS: Dict[Type[_Schema], FrozenSet[str]] = {}


def known_field_names(schema: Type[_Schema]) -> FrozenSet[str]:
    """Every field name and alias a schema consumes."""
    cached = _KNOWN_FIELDS.get(schema)
    if cached is not None:
        return cached
    names = set()
    for name, info in schema.model_fields.items():
        names.add(name)
        alias = info.validation_alias
        if isinstance(alias, AliasChoices):
            names.update(choice for choice in alias.choices if isinstance(choice, str))
        elif isinstance(alias, str):
            names.add(alias)
    # Record-side bookkeeping that is never validated
    names.add("versions")
    result = frozenset(names)
    _KNOWN_FIELDS[schema] = result
    return result


# =============================================================================
# Entry points
# =============================================================================


@dataclass
class ParseIssue:
    """Validation failure for one element of a batch."""

    index: int
    issues: List[Dict[str, Any]]


@dataclass
class ParseResult:
    """Partial-success result of ``parse_array``."""

    valid: List[Any] = field(default_factory=list)
    errors: List[ParseIssue] = field(default_factory=list)
    dropped_fields: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _payload(value: Any) -> Any:
    """Turn a record instance back into a mapping so it can be revalidated."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        payload = dataclasses.asdict(value)
        payload.pop("versions", None)
        return payload
    return value


def _simplify(errors: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg", "")}
        for err in errors
    ]


def _validate(kind: RecordKind, value: Any) -> _Schema:
    schema = SCHEMAS[RecordKind(kind)]
    payload = _payload(value)
    if not isinstance(payload, dict):
        raise RecordValidationError(
            f"{kind.value} payload must be an object, got {type(payload).__name__}",
            issues=[{"loc": "", "msg": "not an object"}],
        )
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as exc:
        issues = _simplify(exc.errors(include_url=False))
        raise RecordValidationError(
            f"Invalid {kind.value}: {issues}", issues=issues, cause=exc
        ) from exc


def parse(kind: RecordKind, value: Any) -> Any:
    """Validate one payload and return its canonical record.

    Raises:
        RecordValidationError: If the payload does not match the schema.
    """
    model = _validate(kind, value)
    dropped = model.dropped_fields()
    if dropped:
        logger.debug("Dropping unknown %s fields: %s", kind.value, dropped)
    return model.to_record()


def parse_array(
    kind: RecordKind,
    values: Optional[Iterable[Any]],
    *,
    reporter: Optional[ErrorReporter] = None,
) -> ParseResult:
    """Validate a batch, keeping valid elements and collecting per-index errors.

    Unknown fields on non-passthrough kinds are reported once per batch.
    """
    result = ParseResult()
    dropped: set = set()
    for index, value in enumerate(values or []):
        try:
            model = _validate(kind, value)
        except RecordValidationError as exc:
            result.errors.append(ParseIssue(index=index, issues=exc.issues))
            continue
        dropped.update(model.dropped_fields())
        result.valid.append(model.to_record())

    result.dropped_fields = sorted(dropped)
    if dropped:
        logger.warning("Dropped unknown %s fields: %s", RecordKind(kind).value, result.dropped_fields)
        if reporter is not None:
            reporter.capture_message(
                "Unknown fields dropped during validation",
                level="warning",
                context={"kind": RecordKind(kind).value, "fields": result.dropped_fields},
            )
    if result.errors:
        logger.warning(
            "%d of %d %s records failed validation",
            len(result.errors),
            len(result.errors) + len(result.valid),
            RecordKind(kind).value,
        )
        if reporter is not None:
            reporter.capture_message(
                "Records failed validation",
                level="warning",
                context={
                    "kind": RecordKind(kind).value,
                    "invalid": len(result.errors),
                    "valid": len(result.valid),
                },
            )
    return result
