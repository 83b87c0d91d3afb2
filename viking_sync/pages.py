"""Page data service.

The loaders behind the four page cache keys. Each loader refreshes the
scope its page shows from upstream, writes it to the store, and returns
a JSON-ready payload built from the store. ``PageCache`` decides when a
loader runs and what to serve offline.
"""

import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional

from .api import OsmClient
from .auth import AuthManager
from .cache import PageCache, PageKind, PageResult, page_key
from .errors import NotFoundError
from .storage import RecordStore
from .sync import SyncOrchestrator

logger = logging.getLogger(__name__)


def _plain(record: Any) -> Dict[str, Any]:
    """A record as a dict without its version bookkeeping."""
    data = dataclasses.asdict(record)
    data.pop("versions", None)
    return data


class PageDataService:
    def __init__(
        self,
        cache: PageCache,
        store: RecordStore,
        client: OsmClient,
        auth: AuthManager,
        orchestrator: SyncOrchestrator,
        is_online: Callable[[], bool],
    ):
        self.cache = cache
        self.store = store
        self.client = client
        self.auth = auth
        self.orchestrator = orchestrator
        self._is_online = is_online

    def _online(self) -> bool:
        return self._is_online() and self.auth.is_authenticated

    # === Payloads from the store ===

    def startup_payload(self) -> Dict[str, Any]:
        user = self.auth.user_info
        return {
            "user": dataclasses.asdict(user) if user else None,
            "sections": [_plain(s) for s in self.store.get_sections()],
            "current_terms": [_plain(t) for t in self.store.get_current_active_terms()],
        }

    def sections_payload(self) -> Dict[str, Any]:
        sections = self.store.get_sections()
        members = self.store.get_members([s.section_id for s in sections])
        return {
            "sections": [_plain(s) for s in sections],
            "members": [_plain(m) for m in members],
        }

    def events_payload(self) -> Dict[str, Any]:
        events = self.orchestrator.displayable_events()
        shared = {m.event_id: m for m in self.store.get_all_shared_event_metadata()}
        return {
            "events": [_plain(e) for e in events],
            "shared": {eid: _plain(m) for eid, m in shared.items() if eid in {e.event_id for e in events}},
        }

    def event_detail_payload(self, event_id: str) -> Dict[str, Any]:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} is not cached", context="load the event")
        shared = self.store.get_shared_event_metadata(event_id)
        return {
            "event": _plain(event),
            "attendance": [_plain(a) for a in self.store.get_attendance(event_id)],
            "shared": _plain(shared) if shared else None,
        }

    # === Loaders ===

    async def _load_startup(self) -> Dict[str, Any]:
        self.store.save_sections(await self.client.get_user_roles())
        self.auth.set_user_info(await self.client.get_user_info())
        return self.startup_payload()

    async def _load_sections(self) -> Dict[str, Any]:
        for section in self.store.get_sections():
            term = self.store.get_current_active_term(section.section_id)
            members = await self.client.get_members_grid(section.section_id, term.term_id if term else None)
            self.store.save_members([section.section_id], members)
        return self.sections_payload()

    async def _load_events(self) -> Dict[str, Any]:
        for section in self.store.get_sections():
            term = self.store.get_current_active_term(section.section_id)
            if term is None:
                continue
            events = await self.client.get_events(section.section_id, term.term_id)
            self.store.save_events(
                section.section_id, [{**e, "term_id": term.term_id} for e in events if isinstance(e, dict)]
            )
        return self.events_payload()

    async def _load_event_detail(self, event_id: str) -> Dict[str, Any]:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} is not cached", context="load the event")
        await self.orchestrator.sync_event_attendance(event)
        await self.orchestrator.sync_shared_attendance(event)
        return self.event_detail_payload(event_id)

    # === Pages ===

    async def startup(self, force: bool = False) -> PageResult:
        return await self.cache.read_through(
            page_key(PageKind.STARTUP), self._load_startup, online=self._online, force=force,
            empty=self.startup_payload(),
        )

    async def sections_page(self, force: bool = False) -> PageResult:
        return await self.cache.read_through(
            page_key(PageKind.SECTIONS_PAGE), self._load_sections, online=self._online, force=force,
            empty=self.sections_payload(),
        )

    async def events_page(self, force: bool = False) -> PageResult:
        return await self.cache.read_through(
            page_key(PageKind.EVENTS_PAGE), self._load_events, online=self._online, force=force,
            empty=self.events_payload(),
        )

    async def event_detail(self, event_id: str, section_id: int, force: bool = False) -> PageResult:
        async def load() -> Dict[str, Any]:
            return await self._load_event_detail(event_id)

        empty: Optional[Dict[str, Any]] = None
        if self.store.get_event(event_id) is not None:
            empty = self.event_detail_payload(event_id)
        return await self.cache.read_through(
            page_key(PageKind.EVENT_DETAIL, event_id=event_id, section_id=section_id),
            load,
            online=self._online,
            force=force,
            empty=empty,
        )

    def invalidate(self, kinds: Optional[List[PageKind]] = None) -> None:
        """Drop cached pages; everything when ``kinds`` is None."""
        if kinds is None:
            self.cache.invalidate()
            return
        for kind in kinds:
            if kind is PageKind.EVENT_DETAIL:
                raise ValueError("Invalidate event detail pages by key")
            self.cache.invalidate(page_key(kind))
