"""Conversion between canonical records and storage rows.

Rows are backend-neutral dicts: booleans are Python bools (or 0/1 when
read back from SQL), JSON columns hold decoded Python values.
"""

from typing import Any, Dict, Optional

from ..types import (
    Attendance,
    CoreMember,
    CurrentActiveTerm,
    Event,
    FlexiData,
    FlexiList,
    FlexiStructure,
    MemberSection,
    Section,
    SharedEventMetadata,
    SyncStatusEntry,
    Term,
    VersionFields,
)


def _get(row: Dict[str, Any], key: str, default: Any = None) -> Any:
    """Safely get a value from a row, returning default if missing or NULL."""
    value = row.get(key)
    return value if value is not None else default


def _bool(row: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = row.get(key)
    if value is None:
        return default
    return bool(value)


def versions_from_row(row: Dict[str, Any]) -> VersionFields:
    return VersionFields(
        version=int(_get(row, "version", 1)),
        local_version=int(_get(row, "local_version", 1)),
        last_sync_version=int(_get(row, "last_sync_version", 1)),
        is_locally_modified=_bool(row, "is_locally_modified"),
        updated_at=row.get("updated_at"),
        last_synced_at=row.get("last_synced_at"),
        conflict_resolution_needed=_bool(row, "conflict_resolution_needed"),
        server_hash=row.get("server_hash"),
        local_snapshot=row.get("local_snapshot"),
    )


# === Sections / terms / events ===


def section_to_row(section: Section) -> Dict[str, Any]:
    return {
        "section_id": section.section_id,
        "name": section.name,
        "section_type": section.section_type,
        "is_default": bool(section.is_default),
        "permissions": section.permissions or {},
    }


def row_to_section(row: Dict[str, Any]) -> Section:
    return Section(
        section_id=int(row["section_id"]),
        name=row["name"],
        section_type=row.get("section_type"),
        is_default=_bool(row, "is_default"),
        permissions=_get(row, "permissions", {}),
        versions=versions_from_row(row),
    )


def term_to_row(term: Term) -> Dict[str, Any]:
    return {
        "section_id": term.section_id,
        "term_id": term.term_id,
        "name": term.name,
        "start_date": term.start_date,
        "end_date": term.end_date,
    }


def row_to_term(row: Dict[str, Any]) -> Term:
    return Term(
        term_id=str(row["term_id"]),
        section_id=int(row["section_id"]),
        name=row["name"],
        start_date=row.get("start_date"),
        end_date=row.get("end_date"),
    )


def current_term_to_row(term: CurrentActiveTerm) -> Dict[str, Any]:
    return {
        "section_id": term.section_id,
        "term_id": term.term_id,
        "term_name": term.term_name,
        "start_date": term.start_date,
        "end_date": term.end_date,
        "last_updated": term.last_updated,
    }


def row_to_current_term(row: Dict[str, Any]) -> CurrentActiveTerm:
    return CurrentActiveTerm(
        section_id=int(row["section_id"]),
        term_id=str(row["term_id"]),
        term_name=row.get("term_name"),
        start_date=row.get("start_date"),
        end_date=row.get("end_date"),
        last_updated=row.get("last_updated"),
    )


def event_to_row(event: Event) -> Dict[str, Any]:
    return {
        "event_id": event.event_id,
        "section_id": event.section_id,
        "term_id": event.term_id,
        "name": event.name,
        "start_date": event.start_date,
        "start_time": event.start_time,
        "end_date": event.end_date,
        "location": event.location,
        "notes": event.notes,
        "cost": event.cost,
    }


def row_to_event(row: Dict[str, Any]) -> Event:
    return Event(
        event_id=str(row["event_id"]),
        section_id=int(row["section_id"]),
        name=row["name"],
        term_id=row.get("term_id"),
        start_date=row.get("start_date"),
        start_time=row.get("start_time"),
        end_date=row.get("end_date"),
        location=row.get("location"),
        notes=row.get("notes"),
        cost=row.get("cost"),
        versions=versions_from_row(row),
    )


# === Attendance ===


def attendance_to_row(record: Attendance, is_shared_section: bool) -> Dict[str, Any]:
    return {
        "event_id": record.event_id,
        "scout_id": record.scout_id,
        "is_shared_section": is_shared_section,
        "section_id": record.section_id,
        "first_name": record.first_name,
        "last_name": record.last_name,
        "attending": record.attending,
        "patrol": record.patrol,
        "notes": record.notes,
    }


def row_to_attendance(row: Dict[str, Any]) -> Attendance:
    return Attendance(
        event_id=str(row["event_id"]),
        scout_id=int(row["scout_id"]),
        section_id=row.get("section_id"),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        attending=row.get("attending"),
        patrol=row.get("patrol"),
        notes=row.get("notes"),
        is_shared_section=_bool(row, "is_shared_section"),
        versions=versions_from_row(row),
    )


def shared_metadata_to_row(meta: SharedEventMetadata) -> Dict[str, Any]:
    return {
        "event_id": meta.event_id,
        "is_shared": bool(meta.is_shared),
        "owner_section_id": meta.owner_section_id,
        "sections": sorted(set(meta.sections)),
        "updated_at": meta.updated_at,
    }


def row_to_shared_metadata(row: Dict[str, Any]) -> SharedEventMetadata:
    return SharedEventMetadata(
        event_id=str(row["event_id"]),
        is_shared=_bool(row, "is_shared"),
        owner_section_id=row.get("owner_section_id"),
        sections=[int(s) for s in _get(row, "sections", [])],
        updated_at=row.get("updated_at"),
    )


# === Members ===


def core_member_to_row(member: CoreMember) -> Dict[str, Any]:
    return {
        "scout_id": member.scout_id,
        "first_name": member.first_name,
        "last_name": member.last_name,
        "date_of_birth": member.date_of_birth,
        "age": member.age,
        "photo_guid": member.photo_guid,
        "has_photo": bool(member.has_photo),
        "contact_groups": member.contact_groups or {},
        "custom_data": member.custom_data or {},
        "flattened_fields": member.flattened_fields or {},
        "read_only": member.read_only or {},
    }


def member_section_to_row(membership: MemberSection) -> Dict[str, Any]:
    return {
        "scout_id": membership.scout_id,
        "section_id": membership.section_id,
        "section_name": membership.section_name,
        "person_type": membership.person_type,
        "patrol": membership.patrol,
        "patrol_id": membership.patrol_id,
        "role": membership.role,
        "started": membership.started,
        "joined": membership.joined,
        "end_date": membership.end_date,
        "active": bool(membership.active),
    }


def row_to_member_section(row: Dict[str, Any]) -> MemberSection:
    return MemberSection(
        scout_id=int(row["scout_id"]),
        section_id=int(row["section_id"]),
        section_name=row.get("section_name"),
        person_type=row.get("person_type"),
        patrol=row.get("patrol"),
        patrol_id=row.get("patrol_id"),
        role=row.get("role"),
        started=row.get("started"),
        joined=row.get("joined"),
        end_date=row.get("end_date"),
        active=_bool(row, "active", True),
    )


def row_to_core_member(row: Dict[str, Any], memberships: Optional[list] = None) -> CoreMember:
    return CoreMember(
        scout_id=int(row["scout_id"]),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        date_of_birth=row.get("date_of_birth"),
        age=row.get("age"),
        photo_guid=row.get("photo_guid"),
        has_photo=_bool(row, "has_photo"),
        contact_groups=_get(row, "contact_groups", {}),
        custom_data=_get(row, "custom_data", {}),
        flattened_fields=_get(row, "flattened_fields", {}),
        read_only=_get(row, "read_only", {}),
        sections=list(memberships or []),
        versions=versions_from_row(row),
    )


# === Flexi records ===


def flexi_list_to_row(item: FlexiList) -> Dict[str, Any]:
    return {
        "section_id": item.section_id,
        "extra_id": item.extra_id,
        "name": item.name,
        "archived": bool(item.archived),
        "soft_deleted": bool(item.soft_deleted),
    }


def row_to_flexi_list(row: Dict[str, Any]) -> FlexiList:
    return FlexiList(
        section_id=int(row["section_id"]),
        extra_id=str(row["extra_id"]),
        name=row["name"],
        archived=_bool(row, "archived"),
        soft_deleted=_bool(row, "soft_deleted"),
    )


def flexi_structure_to_row(structure: FlexiStructure) -> Dict[str, Any]:
    return {
        "extra_id": structure.extra_id,
        "name": structure.name,
        "section_id": structure.section_id,
        "term_id": structure.term_id,
        "config": structure.config,
        "structure": structure.structure or [],
        "updated_at": structure.updated_at,
    }


def row_to_flexi_structure(row: Dict[str, Any]) -> FlexiStructure:
    return FlexiStructure(
        extra_id=str(row["extra_id"]),
        name=row.get("name"),
        section_id=row.get("section_id"),
        term_id=row.get("term_id"),
        config=row.get("config"),
        structure=_get(row, "structure", []),
        updated_at=row.get("updated_at"),
    )


def flexi_data_to_row(item: FlexiData) -> Dict[str, Any]:
    return {
        "extra_id": item.extra_id,
        "section_id": item.section_id,
        "term_id": item.term_id,
        "scout_id": item.scout_id,
        "first_name": item.first_name,
        "last_name": item.last_name,
        "data": item.data or {},
    }


def row_to_flexi_data(row: Dict[str, Any]) -> FlexiData:
    return FlexiData(
        extra_id=str(row["extra_id"]),
        section_id=int(row["section_id"]),
        term_id=str(row["term_id"]),
        scout_id=int(row["scout_id"]),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        data=_get(row, "data", {}),
    )


def row_to_sync_status(row: Dict[str, Any]) -> SyncStatusEntry:
    return SyncStatusEntry(
        table_name=row["table_name"],
        last_sync_at=row.get("last_sync_at"),
        needs_sync=_bool(row, "needs_sync", True),
    )
