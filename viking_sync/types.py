"""
Shared record types for viking_sync.

All canonical records live here. These are the vocabulary between the
validation boundary, the local store, the sync orchestrator and callers.
Validation produces them; the store persists and returns them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string, returning None when unparseable."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


def parse_date(s: Optional[str]) -> Optional[date]:
    """Parse the date part of an upstream date or datetime string.

    Upstream sends ``YYYY-MM-DD``, ``YYYY-MM-DD HH:MM:SS`` and full ISO
    timestamps interchangeably.
    """
    if not s:
        return None
    text = str(s).strip()[:10]
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


# === Enums ===


class RecordKind(str, Enum):
    """Externally sourced record kinds accepted by the validation boundary."""

    SECTION = "section"
    TERM = "term"
    EVENT = "event"
    ATTENDANCE = "attendance"
    SHARED_ATTENDANCE = "shared_attendance"
    SHARED_EVENT_METADATA = "shared_event_metadata"
    MEMBER = "member"
    FLEXI_LIST = "flexi_list"
    FLEXI_STRUCTURE = "flexi_structure"
    FLEXI_DATA = "flexi_data"
    USER_INFO = "user_info"


class AuthState(str, Enum):
    """Authentication lifecycle states."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    OFFLINE_WITH_CACHE = "offline_with_cache"
    BLOCKED = "blocked"


class SyncStage(str, Enum):
    """Stages of the sync protocol."""

    DASHBOARD = "dashboard"  # Stage A: roles, sections, terms, flexi catalogs
    BACKGROUND = "background"  # Stage B: members, events, attendance
    ATTENDANCE = "attendance"  # Attendance-only refresh


class PersonType(str, Enum):
    """Member role within a section, derived from the patrol id."""

    YOUNG_PEOPLE = "Young People"
    LEADERS = "Leaders"
    YOUNG_LEADERS = "Young Leaders"


LEADERS_PATROL_ID = -2
YOUNG_LEADERS_PATROL_ID = -3


def person_type_for_patrol(patrol_id: Optional[int]) -> str:
    """Map an upstream patrol id onto a person type."""
    if patrol_id == LEADERS_PATROL_ID:
        return PersonType.LEADERS.value
    if patrol_id == YOUNG_LEADERS_PATROL_ID:
        return PersonType.YOUNG_LEADERS.value
    return PersonType.YOUNG_PEOPLE.value


# === Version tracking ===


@dataclass
class VersionFields:
    """Per-record version bookkeeping used by sync conflict detection.

    Invariant: ``local_version > last_sync_version`` exactly when
    ``is_locally_modified`` is true.
    """

    version: int = 1
    local_version: int = 1
    last_sync_version: int = 1
    is_locally_modified: bool = False
    updated_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    conflict_resolution_needed: bool = False
    # Digest of the last server payload ingested for this row
    server_hash: Optional[str] = None
    # Local field values retained when a server update collides with local edits
    local_snapshot: Optional[Dict[str, Any]] = None


# === Records ===


@dataclass
class Section:
    """A cohort of young people (Beavers, Cubs, ...)."""

    section_id: int
    name: str
    section_type: Optional[str] = None
    is_default: bool = False
    permissions: Dict[str, Any] = field(default_factory=dict)
    versions: VersionFields = field(default_factory=VersionFields)


@dataclass
class Term:
    """A scheduling period attached to a section."""

    term_id: str
    section_id: int
    name: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass
class CurrentActiveTerm:
    """Derived selector: the term a section is currently working in."""

    section_id: int
    term_id: str
    term_name: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    last_updated: Optional[str] = None


@dataclass
class Event:
    """A scheduled activity attached to a section and a term."""

    event_id: str
    section_id: int
    name: str
    term_id: Optional[str] = None
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    end_date: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    cost: Optional[str] = None
    versions: VersionFields = field(default_factory=VersionFields)


@dataclass
class Attendance:
    """A per-scout, per-event attendance record.

    Regular rows come from the event's own section; shared rows come from
    other sections taking part in a shared event.
    """

    event_id: str
    scout_id: int
    section_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    attending: Optional[str] = None
    patrol: Optional[str] = None
    notes: Optional[str] = None
    is_shared_section: bool = False
    versions: VersionFields = field(default_factory=VersionFields)


@dataclass
class SharedEventMetadata:
    """Marks an event as one instance of an activity run by several sections."""

    event_id: str
    is_shared: bool = False
    owner_section_id: Optional[int] = None
    sections: List[int] = field(default_factory=list)
    updated_at: Optional[str] = None


@dataclass
class MemberSection:
    """Membership of a scout in one section."""

    scout_id: int
    section_id: int
    section_name: Optional[str] = None
    person_type: Optional[str] = None
    patrol: Optional[str] = None
    patrol_id: Optional[int] = None
    role: Optional[str] = None
    started: Optional[str] = None
    joined: Optional[str] = None
    end_date: Optional[str] = None
    active: bool = True


@dataclass
class CoreMember:
    """A person, aggregated across every section they belong to.

    ``contact_groups``, ``custom_data`` and ``flattened_fields`` are opaque
    maps preserved verbatim from upstream.
    """

    scout_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    age: Optional[str] = None
    photo_guid: Optional[str] = None
    has_photo: bool = False
    contact_groups: Dict[str, Any] = field(default_factory=dict)
    custom_data: Dict[str, Any] = field(default_factory=dict)
    flattened_fields: Dict[str, Any] = field(default_factory=dict)
    read_only: Dict[str, Any] = field(default_factory=dict)
    sections: List[MemberSection] = field(default_factory=list)
    versions: VersionFields = field(default_factory=VersionFields)


@dataclass
class FlexiList:
    """Per-section catalog entry for a FlexiRecord."""

    section_id: int
    extra_id: str
    name: str
    archived: bool = False
    soft_deleted: bool = False


@dataclass
class FlexiStructure:
    """Schema of a FlexiRecord, shared across sections."""

    extra_id: str
    name: Optional[str] = None
    section_id: Optional[int] = None
    term_id: Optional[str] = None
    config: Any = None
    structure: List[Any] = field(default_factory=list)
    updated_at: Optional[str] = None


@dataclass
class FlexiData:
    """One member's row in a FlexiRecord; ``data`` holds passthrough columns."""

    extra_id: str
    section_id: int
    term_id: str
    scout_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UserInfo:
    """The signed-in leader, from startup data."""

    user_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class SyncStatusEntry:
    """Orchestrator bookkeeping for one table."""

    table_name: str
    last_sync_at: Optional[str] = None
    needs_sync: bool = True


@dataclass
class CachePageEntry:
    """A page-scoped cache payload with its write time (epoch seconds)."""

    cache_key: str
    payload: Any
    timestamp: float


# === Sync results ===


@dataclass
class StageResult:
    """Outcome of one sync stage."""

    stage: SyncStage
    success: bool = True
    counts: Dict[str, int] = field(default_factory=dict)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def count(self, key: str, n: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + n


@dataclass
class SyncResult:
    """Outcome of ``sync_all``."""

    success: bool = False
    in_progress: bool = False
    skipped_reason: Optional[str] = None
    stages: List[StageResult] = field(default_factory=list)

    @property
    def failures(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for stage in self.stages:
            out.extend(stage.failures)
        return out
