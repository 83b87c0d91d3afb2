"""Record-level operations shared by every local store backend.

Backends supply ``initialize``, ``close`` and a ``_transaction()``
context manager yielding a ``StoreTransaction``; everything else lives
here. Each write validates its input, runs in one transaction, and either
commits completely or raises ``StorageError`` with nothing changed.
Readers never raise: an uninitialized or failing store reads as empty.
"""

import contextlib
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar

from ..errors import NotFoundError, StorageError, VikingError
from ..observability import ErrorReporter
from ..types import (
    Attendance,
    CachePageEntry,
    CoreMember,
    CurrentActiveTerm,
    Event,
    FlexiData,
    FlexiList,
    FlexiStructure,
    MemberSection,
    RecordKind,
    Section,
    SharedEventMetadata,
    SyncStatusEntry,
    Term,
    VersionFields,
    parse_datetime,
    utc_now,
)
from ..validation import parse, parse_array
from . import codec
from .base import StoreTransaction
from .keys import RETAINED_METADATA_KEYS, is_demo_row, page_cache_key
from .merge import merge_member_content
from .schema import (
    ENTITY_TABLES,
    OFFLINE_DATA_TABLES,
    TABLE_KEYS,
    VERSIONED_TABLES,
    validate_table_name,
)
from .versioning import (
    apply_local_edit,
    content_of,
    ingest_server_row,
    resolve_conflict,
    version_invariant_holds,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upstream spellings of scope identifiers, used when injecting scope defaults
_SCOPE_ALIASES = {
    "section_id": ("section_id", "sectionid"),
    "event_id": ("event_id", "eventid"),
    "term_id": ("term_id", "termid"),
    "extra_id": ("extra_id", "extraid", "flexirecordid"),
}

_ROW_DECODERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "sections": codec.row_to_section,
    "events": codec.row_to_event,
    "attendance": codec.row_to_attendance,
    "core_members": codec.row_to_core_member,
}


def _with_scope(items: Optional[Iterable[Any]], **scope: Any) -> List[Any]:
    """Fill missing scope identifiers on mapping payloads."""
    out = []
    for item in items or []:
        if isinstance(item, Mapping):
            item = dict(item)
            for canonical, value in scope.items():
                aliases = _SCOPE_ALIASES.get(canonical, (canonical,))
                if not any(item.get(alias) not in (None, "") for alias in aliases):
                    item[canonical] = value
        out.append(item)
    return out


def _name_key(first: Optional[str], last: Optional[str]) -> tuple:
    return ((last or "").lower(), (first or "").lower())


class RecordStore:
    """Transactional record store; subclasses provide the backend."""

    backend_name = "abstract"

    def __init__(
        self,
        *,
        demo_mode: bool = False,
        reporter: Optional[ErrorReporter] = None,
        now_fn: Callable[[], str] = utc_now,
    ):
        self.demo_mode = demo_mode
        self.reporter = reporter
        self._now = now_fn
        self._initialized = False

    # === Backend hooks ===

    def initialize(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @contextlib.contextmanager
    def _transaction(self, write: bool = True) -> Iterator[StoreTransaction]:
        raise NotImplementedError
        yield  # pragma: no cover

    # === Plumbing ===

    @contextlib.contextmanager
    def _write(self, action: str) -> Iterator[StoreTransaction]:
        if not self._initialized:
            raise StorageError("Local store is not initialized", context=action)
        try:
            with self._transaction(write=True) as tx:
                yield tx
        except VikingError:
            raise
        except Exception as e:
            logger.error(f"Failed to {action}: {e}")
            raise StorageError(f"Failed to {action}: {e}", context=action, cause=e) from e

    def _read(self, action: str, fn: Callable[[StoreTransaction], T], default: T) -> T:
        if not self._initialized:
            return default
        try:
            with self._transaction(write=False) as tx:
                return fn(tx)
        except Exception as e:
            logger.warning(f"Failed to {action}, returning empty result: {e}")
            return default

    def _validated(self, kind: RecordKind, items: Iterable[Any]) -> List[Any]:
        result = parse_array(kind, items, reporter=self.reporter)
        return result.valid

    def _visible(self, row: Dict[str, Any], *fields: str) -> bool:
        """Demo rows are only visible to a demo-mode process."""
        return self.demo_mode or not is_demo_row(row, *fields)

    def _touch_sync_status(self, tx: StoreTransaction, table: str, now: str) -> None:
        tx.upsert("sync_status", [{"table_name": table, "last_sync_at": now, "needs_sync": False}])

    # =========================================================================
    # Sections
    # =========================================================================

    def save_sections(self, sections: Iterable[Any]) -> int:
        """Replace all sections."""
        records: List[Section] = self._validated(RecordKind.SECTION, sections)
        rows = [codec.section_to_row(s) for s in records]
        rows = [r for r in rows if self._visible(r, "name")]
        now = self._now()
        with self._write("save sections") as tx:
            existing = {r["section_id"]: r for r in tx.select("sections")}
            stored = [ingest_server_row(existing.get(r["section_id"]), r, now) for r in rows]
            tx.delete("sections")
            tx.upsert("sections", stored)
            self._touch_sync_status(tx, "sections", now)
        logger.debug(f"Saved {len(stored)} sections")
        return len(stored)

    def get_sections(self) -> List[Section]:
        """All sections, sorted by name."""

        def load(tx: StoreTransaction) -> List[Section]:
            rows = [r for r in tx.select("sections") if self._visible(r, "name")]
            rows.sort(key=lambda r: ((r.get("name") or "").lower(), r["section_id"]))
            return [codec.row_to_section(r) for r in rows]

        return self._read("load sections", load, [])

    def get_section(self, section_id: int) -> Optional[Section]:
        for section in self.get_sections():
            if section.section_id == int(section_id):
                return section
        return None

    # =========================================================================
    # Terms
    # =========================================================================

    def save_terms(self, section_id: int, terms: Iterable[Any]) -> int:
        """Replace the terms of one section."""
        section_id = int(section_id)
        records: List[Term] = self._validated(
            RecordKind.TERM, _with_scope(terms, section_id=section_id)
        )
        rows = [codec.term_to_row(t) for t in records if t.section_id == section_id]
        with self._write("save terms") as tx:
            tx.delete("terms", section_id=section_id)
            tx.upsert("terms", rows)
            self._touch_sync_status(tx, "terms", self._now())
        return len(rows)

    def get_terms(self, section_id: Optional[int] = None) -> List[Term]:
        """Terms, most recent start first."""

        def load(tx: StoreTransaction) -> List[Term]:
            where = {} if section_id is None else {"section_id": int(section_id)}
            rows = tx.select("terms", **where)
            rows.sort(key=lambda r: (r.get("start_date") or "", str(r["term_id"])), reverse=True)
            return [codec.row_to_term(r) for r in rows]

        return self._read("load terms", load, [])

    def save_current_active_term(self, term: CurrentActiveTerm) -> None:
        row = codec.current_term_to_row(term)
        with self._write("save current active term") as tx:
            existing = tx.select("current_active_terms", section_id=term.section_id)
            if existing:
                old = dict(existing[0])
                unchanged = {k: v for k, v in old.items() if k != "last_updated"} == {
                    k: v for k, v in row.items() if k != "last_updated"
                }
                if unchanged:
                    return
            row["last_updated"] = row.get("last_updated") or self._now()
            tx.upsert("current_active_terms", [row])

    def get_current_active_term(self, section_id: int) -> Optional[CurrentActiveTerm]:
        def load(tx: StoreTransaction) -> Optional[CurrentActiveTerm]:
            rows = tx.select("current_active_terms", section_id=int(section_id))
            return codec.row_to_current_term(rows[0]) if rows else None

        return self._read("load current active term", load, None)

    def get_current_active_terms(self) -> List[CurrentActiveTerm]:
        def load(tx: StoreTransaction) -> List[CurrentActiveTerm]:
            rows = sorted(tx.select("current_active_terms"), key=lambda r: r["section_id"])
            return [codec.row_to_current_term(r) for r in rows]

        return self._read("load current active terms", load, [])

    # =========================================================================
    # Events
    # =========================================================================

    def save_events(self, section_id: int, events: Iterable[Any]) -> int:
        """Replace the events of one section.

        Attendance for events that disappear from the section goes with
        them, so attendance never outlives its event.
        """
        section_id = int(section_id)
        records: List[Event] = self._validated(
            RecordKind.EVENT, _with_scope(events, section_id=section_id)
        )
        rows = []
        for event in records:
            if event.section_id != section_id:
                logger.warning(
                    f"Skipping event {event.event_id}: belongs to section {event.section_id}, "
                    f"not {section_id}"
                )
                continue
            row = codec.event_to_row(event)
            if self._visible(row, "name", "event_id"):
                rows.append(row)

        now = self._now()
        new_ids = [r["event_id"] for r in rows]
        with self._write("save events") as tx:
            previous = {r["event_id"]: r for r in tx.select("events", section_id=section_id)}
            moved = {r["event_id"]: r for r in tx.select("events", event_id=new_ids)}
            existing = {**previous, **moved}
            stored = [ingest_server_row(existing.get(r["event_id"]), r, now) for r in rows]
            removed = [eid for eid in previous if eid not in set(new_ids)]
            if removed:
                tx.delete("attendance", event_id=removed)
                tx.delete("shared_event_metadata", event_id=removed)
            tx.delete("events", section_id=section_id)
            tx.delete("events", event_id=new_ids)
            tx.upsert("events", stored)
            self._touch_sync_status(tx, "events", now)
        logger.debug(f"Saved {len(stored)} events for section {section_id}")
        return len(stored)

    def get_events(
        self, section_id: Optional[int] = None, term_id: Optional[str] = None
    ) -> List[Event]:
        """Events, most recent start date first."""

        def load(tx: StoreTransaction) -> List[Event]:
            where: Dict[str, Any] = {}
            if section_id is not None:
                where["section_id"] = int(section_id)
            if term_id is not None:
                where["term_id"] = str(term_id)
            rows = [r for r in tx.select("events", **where) if self._visible(r, "name", "event_id")]
            rows.sort(key=lambda r: (r.get("start_date") or "", r.get("name") or "", r["event_id"]))
            rows.reverse()
            return [codec.row_to_event(r) for r in rows]

        return self._read("load events", load, [])

    def get_event(self, event_id: str) -> Optional[Event]:
        def load(tx: StoreTransaction) -> Optional[Event]:
            rows = tx.select("events", event_id=str(event_id))
            if not rows or not self._visible(rows[0], "name", "event_id"):
                return None
            return codec.row_to_event(rows[0])

        return self._read("load event", load, None)

    # =========================================================================
    # Attendance
    # =========================================================================

    def save_attendance(self, event_id: str, records: Iterable[Any]) -> int:
        """Replace the regular attendance rows of one event; shared rows are untouched."""
        return self._replace_attendance(str(event_id), records, shared=False)

    def save_shared_attendance(self, event_id: str, records: Iterable[Any]) -> int:
        """Replace the shared-section attendance rows of one event; regular rows are untouched."""
        return self._replace_attendance(str(event_id), records, shared=True)

    def _replace_attendance(self, event_id: str, records: Iterable[Any], shared: bool) -> int:
        kind = RecordKind.SHARED_ATTENDANCE if shared else RecordKind.ATTENDANCE
        parsed: List[Attendance] = self._validated(kind, _with_scope(records, event_id=event_id))
        rows = {}
        for record in parsed:
            if record.event_id != event_id:
                logger.warning(f"Skipping attendance for event {record.event_id} in save for {event_id}")
                continue
            rows[record.scout_id] = codec.attendance_to_row(record, is_shared_section=shared)

        now = self._now()
        action = "save shared attendance" if shared else "save attendance"
        with self._write(action) as tx:
            if not tx.count("events", event_id=event_id):
                raise NotFoundError(f"Event {event_id} is not in the local store", context=action)
            existing = {
                r["scout_id"]: r
                for r in tx.select("attendance", event_id=event_id, is_shared_section=shared)
            }
            stored = [ingest_server_row(existing.get(sid), row, now) for sid, row in rows.items()]
            tx.delete("attendance", event_id=event_id, is_shared_section=shared)
            tx.upsert("attendance", stored)
            self._touch_sync_status(tx, "attendance", now)
        return len(stored)

    def get_attendance(self, event_id: str, include_shared: bool = True) -> List[Attendance]:
        """Attendance for an event: regular rows first, each group by name."""

        def load(tx: StoreTransaction) -> List[Attendance]:
            where: Dict[str, Any] = {"event_id": str(event_id)}
            if not include_shared:
                where["is_shared_section"] = False
            rows = [r for r in tx.select("attendance", **where) if self._visible(r, "event_id")]
            rows.sort(
                key=lambda r: (
                    bool(r.get("is_shared_section")),
                    _name_key(r.get("first_name"), r.get("last_name")),
                    r["scout_id"],
                )
            )
            return [codec.row_to_attendance(r) for r in rows]

        return self._read("load attendance", load, [])

    def get_shared_attendance(self, event_id: str) -> List[Attendance]:
        return [a for a in self.get_attendance(event_id) if a.is_shared_section]

    def record_attendance_edit(
        self, event_id: str, scout_id: int, changes: Dict[str, Any], shared: bool = False
    ) -> Attendance:
        """Apply a leader's edit to an attendance row on this device."""
        key = {"event_id": str(event_id), "scout_id": int(scout_id), "is_shared_section": shared}
        allowed = {"attending", "patrol", "notes"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Attendance fields cannot be edited: {sorted(unknown)}")
        row = self.apply_local_edit("attendance", key, changes)
        return codec.row_to_attendance(row)

    # =========================================================================
    # Shared event metadata
    # =========================================================================

    def save_shared_event_metadata(self, record: Any) -> SharedEventMetadata:
        """Upsert metadata by event id; ``updated_at`` only moves when content changes."""
        meta: SharedEventMetadata = parse(RecordKind.SHARED_EVENT_METADATA, record)
        row = codec.shared_metadata_to_row(meta)
        with self._write("save shared event metadata") as tx:
            existing = tx.select("shared_event_metadata", event_id=meta.event_id)
            if existing:
                old = codec.shared_metadata_to_row(codec.row_to_shared_metadata(existing[0]))
                if {k: v for k, v in old.items() if k != "updated_at"} == {
                    k: v for k, v in row.items() if k != "updated_at"
                }:
                    return codec.row_to_shared_metadata(existing[0])
            row["updated_at"] = self._now()
            tx.upsert("shared_event_metadata", [row])
        return codec.row_to_shared_metadata(row)

    def get_shared_event_metadata(self, event_id: str) -> Optional[SharedEventMetadata]:
        def load(tx: StoreTransaction) -> Optional[SharedEventMetadata]:
            rows = tx.select("shared_event_metadata", event_id=str(event_id))
            return codec.row_to_shared_metadata(rows[0]) if rows else None

        return self._read("load shared event metadata", load, None)

    def get_all_shared_event_metadata(self) -> List[SharedEventMetadata]:
        def load(tx: StoreTransaction) -> List[SharedEventMetadata]:
            rows = sorted(tx.select("shared_event_metadata"), key=lambda r: str(r["event_id"]))
            return [codec.row_to_shared_metadata(r) for r in rows]

        return self._read("load shared event metadata", load, [])

    # =========================================================================
    # Members
    # =========================================================================

    def save_members(self, section_ids: Sequence[int], members: Iterable[Any]) -> int:
        """Merge members into the core table and record their section memberships.

        Core rows accumulate across sections. Membership rows are replaced
        only for the (scout, section) pairs present in ``members``; other
        memberships are never removed here.
        """
        section_ids = [int(s) for s in section_ids]
        records: List[CoreMember] = self._validated(RecordKind.MEMBER, members)
        now = self._now()
        with self._write("save members") as tx:
            ids = [m.scout_id for m in records]
            existing = {r["scout_id"]: r for r in tx.select("core_members", scout_id=ids)}
            memberships: List[Dict[str, Any]] = []
            for member in records:
                incoming = codec.core_member_to_row(member)
                current = existing.get(member.scout_id)
                merged = merge_member_content(content_of(current) if current else None, incoming)
                row = ingest_server_row(current, merged, now)
                tx.upsert("core_members", [row])
                existing[member.scout_id] = row

                sections = list(member.sections)
                if not sections and len(section_ids) == 1:
                    sections = [MemberSection(scout_id=member.scout_id, section_id=section_ids[0])]
                memberships.extend(codec.member_section_to_row(s) for s in sections)
            tx.upsert("member_sections", memberships)
            self._touch_sync_status(tx, "members", now)
        logger.debug(f"Saved {len(records)} members for sections {section_ids}")
        return len(records)

    def get_members(self, section_ids: Optional[Sequence[int]] = None) -> List[CoreMember]:
        """Members of the given sections (all when None), sorted by last then first name.

        Each member carries only the memberships for the requested sections.
        """

        def load(tx: StoreTransaction) -> List[CoreMember]:
            where = {} if section_ids is None else {"section_id": [int(s) for s in section_ids]}
            links = tx.select("member_sections", **where)
            by_scout: Dict[int, List[MemberSection]] = {}
            for link in links:
                by_scout.setdefault(int(link["scout_id"]), []).append(codec.row_to_member_section(link))
            if not by_scout:
                return []
            rows = tx.select("core_members", scout_id=list(by_scout))
            rows.sort(
                key=lambda r: (_name_key(r.get("first_name"), r.get("last_name")), r["scout_id"])
            )
            return [
                codec.row_to_core_member(
                    r, sorted(by_scout[int(r["scout_id"])], key=lambda m: m.section_id)
                )
                for r in rows
            ]

        return self._read("load members", load, [])

    def get_member(self, scout_id: int) -> Optional[CoreMember]:
        def load(tx: StoreTransaction) -> Optional[CoreMember]:
            rows = tx.select("core_members", scout_id=int(scout_id))
            if not rows:
                return None
            links = tx.select("member_sections", scout_id=int(scout_id))
            memberships = sorted(
                (codec.row_to_member_section(link) for link in links), key=lambda m: m.section_id
            )
            return codec.row_to_core_member(rows[0], memberships)

        return self._read("load member", load, None)

    # =========================================================================
    # Flexi records
    # =========================================================================

    def save_flexi_lists(self, section_id: int, lists: Iterable[Any]) -> int:
        """Replace the FlexiRecord catalog of one section."""
        section_id = int(section_id)
        records: List[FlexiList] = self._validated(
            RecordKind.FLEXI_LIST, _with_scope(lists, section_id=section_id)
        )
        rows = [
            codec.flexi_list_to_row(r)
            for r in records
            if r.section_id == section_id and self._visible({"name": r.name, "extra_id": r.extra_id}, "name", "extra_id")
        ]
        with self._write("save flexi lists") as tx:
            tx.delete("flexi_lists", section_id=section_id)
            tx.upsert("flexi_lists", rows)
            self._touch_sync_status(tx, "flexi_lists", self._now())
        return len(rows)

    def get_flexi_lists(self, section_id: Optional[int] = None) -> List[FlexiList]:
        def load(tx: StoreTransaction) -> List[FlexiList]:
            where = {} if section_id is None else {"section_id": int(section_id)}
            rows = [r for r in tx.select("flexi_lists", **where) if self._visible(r, "name", "extra_id")]
            rows.sort(key=lambda r: ((r.get("name") or "").lower(), r["section_id"], str(r["extra_id"])))
            return [codec.row_to_flexi_list(r) for r in rows]

        return self._read("load flexi lists", load, [])

    def save_flexi_structure(self, extra_id: str, record: Any) -> FlexiStructure:
        """Upsert a FlexiRecord structure by ``extra_id``."""
        if isinstance(record, Mapping):
            record = _with_scope([record], extra_id=str(extra_id))[0]
        structure: FlexiStructure = parse(RecordKind.FLEXI_STRUCTURE, record)
        if structure.extra_id != str(extra_id):
            raise ValueError(f"Structure {structure.extra_id} saved under extra_id {extra_id}")
        row = codec.flexi_structure_to_row(structure)
        with self._write("save flexi structure") as tx:
            existing = tx.select("flexi_structure", extra_id=structure.extra_id)
            if existing:
                old = dict(existing[0])
                if {k: v for k, v in old.items() if k != "updated_at"} == {
                    k: v for k, v in row.items() if k != "updated_at"
                }:
                    return codec.row_to_flexi_structure(old)
            row["updated_at"] = self._now()
            tx.upsert("flexi_structure", [row])
        return codec.row_to_flexi_structure(row)

    def get_flexi_structure(self, extra_id: str) -> Optional[FlexiStructure]:
        def load(tx: StoreTransaction) -> Optional[FlexiStructure]:
            rows = tx.select("flexi_structure", extra_id=str(extra_id))
            return codec.row_to_flexi_structure(rows[0]) if rows else None

        return self._read("load flexi structure", load, None)

    def save_flexi_data(
        self, extra_id: str, section_id: int, term_id: str, records: Iterable[Any]
    ) -> int:
        """Replace the data rows of one FlexiRecord for a section and term."""
        extra_id, section_id, term_id = str(extra_id), int(section_id), str(term_id)
        parsed: List[FlexiData] = self._validated(
            RecordKind.FLEXI_DATA,
            _with_scope(records, extra_id=extra_id, section_id=section_id, term_id=term_id),
        )
        rows = [
            codec.flexi_data_to_row(r)
            for r in parsed
            if (r.extra_id, r.section_id, r.term_id) == (extra_id, section_id, term_id)
        ]
        with self._write("save flexi data") as tx:
            tx.delete("flexi_data", extra_id=extra_id, section_id=section_id, term_id=term_id)
            tx.upsert("flexi_data", rows)
            self._touch_sync_status(tx, "flexi_data", self._now())
        return len(rows)

    def get_flexi_data(self, extra_id: str, section_id: int, term_id: str) -> List[FlexiData]:
        def load(tx: StoreTransaction) -> List[FlexiData]:
            rows = tx.select(
                "flexi_data", extra_id=str(extra_id), section_id=int(section_id), term_id=str(term_id)
            )
            rows.sort(key=lambda r: (_name_key(r.get("first_name"), r.get("last_name")), r["scout_id"]))
            return [codec.row_to_flexi_data(r) for r in rows]

        return self._read("load flexi data", load, [])

    def update_flexi_value(
        self, extra_id: str, section_id: int, term_id: str, scout_id: int, column_id: str, value: Any
    ) -> FlexiData:
        """Set one column of a member's FlexiRecord row."""
        key = {
            "extra_id": str(extra_id),
            "section_id": int(section_id),
            "term_id": str(term_id),
            "scout_id": int(scout_id),
        }
        with self._write("update flexi value") as tx:
            rows = tx.select("flexi_data", **key)
            row = dict(rows[0]) if rows else {**key, "first_name": None, "last_name": None, "data": {}}
            data = dict(row.get("data") or {})
            data[column_id] = value
            row["data"] = data
            tx.upsert("flexi_data", [row])
        return codec.row_to_flexi_data(row)

    # =========================================================================
    # Versions and conflicts
    # =========================================================================

    def _versioned(self, table: str) -> str:
        validate_table_name(table)
        if table not in VERSIONED_TABLES:
            raise ValueError(f"Table {table} does not track versions")
        return table

    def _key_filter(self, table: str, key: Dict[str, Any]) -> Dict[str, Any]:
        missing = [k for k in TABLE_KEYS[table] if k not in key]
        if table == "attendance" and missing == ["is_shared_section"]:
            key = {**key, "is_shared_section": False}
            missing = []
        if missing:
            raise ValueError(f"Key for {table} is missing {missing}")
        return {k: key[k] for k in TABLE_KEYS[table]}

    def apply_local_edit(self, table: str, key: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        """Edit a versioned row locally, bumping its local version."""
        table = self._versioned(table)
        where = self._key_filter(table, key)
        with self._write(f"edit {table}") as tx:
            rows = tx.select(table, **where)
            if not rows:
                raise NotFoundError(f"No {table} row for {where}", context=f"edit {table}")
            row = apply_local_edit(rows[0], changes, self._now())
            tx.upsert(table, [row])
        return row

    def get_locally_modified(self, table: str) -> List[Any]:
        table = self._versioned(table)
        return self._read(
            f"load modified {table}",
            lambda tx: [_ROW_DECODERS[table](r) for r in tx.select(table, is_locally_modified=True)],
            [],
        )

    def get_conflicts(self, table: str) -> List[Any]:
        table = self._versioned(table)
        return self._read(
            f"load conflicts in {table}",
            lambda tx: [_ROW_DECODERS[table](r) for r in tx.select(table, conflict_resolution_needed=True)],
            [],
        )

    def get_record_versions(self, table: str, key: Dict[str, Any]) -> Optional[VersionFields]:
        table = self._versioned(table)
        where = self._key_filter(table, key)

        def load(tx: StoreTransaction) -> Optional[VersionFields]:
            rows = tx.select(table, **where)
            return codec.versions_from_row(rows[0]) if rows else None

        return self._read(f"load versions in {table}", load, None)

    def resolve_conflict(self, table: str, key: Dict[str, Any], keep_local: bool) -> bool:
        """Clear a conflict flag, keeping the server or the local field values."""
        table = self._versioned(table)
        where = self._key_filter(table, key)
        with self._write(f"resolve conflict in {table}") as tx:
            rows = tx.select(table, **where)
            if not rows or not rows[0].get("conflict_resolution_needed"):
                return False
            row = resolve_conflict(rows[0], keep_local, self._now())
            if not version_invariant_holds(row):
                raise StorageError(f"Version invariant violated resolving {where}")
            tx.upsert(table, [row])
        return True

    def get_sync_stats(self) -> Dict[str, Dict[str, int]]:
        """Per versioned table: totals, locally modified, conflicted and clean rows."""

        def load(tx: StoreTransaction) -> Dict[str, Dict[str, int]]:
            stats: Dict[str, Dict[str, int]] = {}
            for table in sorted(VERSIONED_TABLES):
                total = tx.count(table)
                modified = tx.count(table, is_locally_modified=True)
                conflicted = tx.count(table, conflict_resolution_needed=True)
                stats[table] = {
                    "total": total,
                    "locally_modified": modified,
                    "conflicted": conflicted,
                    "synced": total - modified,
                }
            return stats

        empty = {t: {"total": 0, "locally_modified": 0, "conflicted": 0, "synced": 0} for t in sorted(VERSIONED_TABLES)}
        return self._read("load sync stats", load, empty)

    # =========================================================================
    # Sync status and metadata
    # =========================================================================

    def update_sync_status(self, table: str, needs_sync: bool = False) -> None:
        with self._write("update sync status") as tx:
            tx.upsert(
                "sync_status",
                [{"table_name": table, "last_sync_at": self._now(), "needs_sync": needs_sync}],
            )

    def get_sync_status(self, table: str) -> Optional[SyncStatusEntry]:
        def load(tx: StoreTransaction) -> Optional[SyncStatusEntry]:
            rows = tx.select("sync_status", table_name=table)
            return codec.row_to_sync_status(rows[0]) if rows else None

        return self._read("load sync status", load, None)

    def needs_sync(self, table: str, max_age_seconds: Optional[float] = None) -> bool:
        """True when a table was never synced, was flagged, or is older than ``max_age_seconds``."""
        status = self.get_sync_status(table)
        if status is None or status.needs_sync or not status.last_sync_at:
            return True
        if max_age_seconds is None:
            return False
        last = parse_datetime(status.last_sync_at)
        if last is None:
            return True
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return (datetime.now(timezone.utc) - last).total_seconds() > max_age_seconds

    def get_metadata(self, key: str, default: Any = None) -> Any:
        def load(tx: StoreTransaction) -> Any:
            rows = tx.select("sync_metadata", key=key)
            return rows[0].get("value") if rows else default

        return self._read("load metadata", load, default)

    def set_metadata(self, key: str, value: Any) -> None:
        with self._write("save metadata") as tx:
            tx.upsert("sync_metadata", [{"key": key, "value": value}])

    def delete_metadata(self, key: str) -> None:
        with self._write("delete metadata") as tx:
            tx.delete("sync_metadata", key=key)

    # =========================================================================
    # Page cache
    # =========================================================================

    def get_page_cache(self, cache_key: str) -> Optional[CachePageEntry]:
        stored_key = page_cache_key(cache_key, self.demo_mode)

        def load(tx: StoreTransaction) -> Optional[CachePageEntry]:
            rows = tx.select("page_cache", cache_key=stored_key)
            if not rows:
                return None
            return CachePageEntry(
                cache_key=cache_key, payload=rows[0].get("payload"), timestamp=float(rows[0]["timestamp"])
            )

        return self._read("load page cache", load, None)

    def set_page_cache(self, entry: CachePageEntry) -> None:
        stored_key = page_cache_key(entry.cache_key, self.demo_mode)
        with self._write("save page cache") as tx:
            tx.upsert(
                "page_cache",
                [{"cache_key": stored_key, "payload": entry.payload, "timestamp": entry.timestamp}],
            )

    def delete_page_cache(self, cache_key: Optional[str] = None) -> int:
        """Delete one page cache entry, or all of them when ``cache_key`` is None."""
        with self._write("clear page cache") as tx:
            if cache_key is None:
                return tx.delete("page_cache")
            return tx.delete("page_cache", cache_key=page_cache_key(cache_key, self.demo_mode))

    # =========================================================================
    # Whole-store operations
    # =========================================================================

    def has_offline_data(self) -> bool:
        """True if anything worth showing offline is cached."""

        def load(tx: StoreTransaction) -> bool:
            if any(tx.count(table) for table in OFFLINE_DATA_TABLES):
                return True
            return bool(tx.count("page_cache", cache_key=page_cache_key("startup", self.demo_mode)))

        return self._read("check offline data", load, False)

    def purge_cached_data(self) -> None:
        """Delete every cached entity row; retained metadata keys survive."""
        with self._write("purge cached data") as tx:
            for table in ENTITY_TABLES:
                tx.delete(table)
            keep = [r for r in tx.select("sync_metadata") if r["key"] in RETAINED_METADATA_KEYS]
            tx.delete("sync_metadata")
            tx.upsert("sync_metadata", keep)
        logger.info("Purged cached data from local store")
