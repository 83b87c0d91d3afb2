"""Page-scoped caches with TTLs.

A small read-through layer above the local store. Each page kind has a
TTL; fresh entries are served directly, misses and stale entries are
refilled from upstream when online, and when offline the last stored
payload is served however old it is.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from .errors import StorageError
from .storage import RecordStore
from .types import CachePageEntry

logger = logging.getLogger(__name__)


class PageKind(str, Enum):
    STARTUP = "startup"
    EVENTS_PAGE = "events-page"
    SECTIONS_PAGE = "sections-page"
    EVENT_DETAIL = "event-detail"


# TTLs in seconds
PAGE_TTLS: Dict[PageKind, float] = {
    PageKind.STARTUP: 60 * 60,
    PageKind.EVENTS_PAGE: 30 * 60,
    PageKind.SECTIONS_PAGE: 30 * 60,
    PageKind.EVENT_DETAIL: 15 * 60,
}


def page_key(kind: PageKind, event_id: Any = None, section_id: Any = None) -> str:
    """Cache key for a page; event detail pages are scoped to an event and section."""
    kind = PageKind(kind)
    if kind is PageKind.EVENT_DETAIL:
        if event_id is None or section_id is None:
            raise ValueError("event-detail pages need an event_id and a section_id")
        return f"{kind.value}-{event_id}-{section_id}"
    return kind.value


def kind_of(cache_key: str) -> PageKind:
    for kind in PageKind:
        if cache_key == kind.value or cache_key.startswith(f"{kind.value}-"):
            return kind
    raise ValueError(f"Unknown page cache key: {cache_key}")


@dataclass
class PageResult:
    """What a read-through returned and where it came from."""

    value: Any
    age: Optional[float] = None
    from_cache: bool = False
    stale: bool = False


Online = Union[bool, Callable[[], bool]]


class PageCache:
    """Read-through page cache backed by the store's page_cache table.

    An in-memory copy fronts the store so repeated reads in one session
    do not hit disk; the store copy survives restarts and feeds offline
    reads.
    """

    def __init__(self, store: RecordStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self._memory: Dict[str, CachePageEntry] = {}

    def ttl_for(self, cache_key: str) -> float:
        return PAGE_TTLS[kind_of(cache_key)]

    def get(self, cache_key: str) -> Optional[Tuple[Any, float]]:
        """Return ``(value, age_seconds)`` or None when nothing is cached."""
        entry = self._entry(cache_key)
        if entry is None:
            return None
        return entry.payload, max(0.0, self._clock() - entry.timestamp)

    def set(self, cache_key: str, value: Any) -> CachePageEntry:
        kind_of(cache_key)
        entry = CachePageEntry(cache_key=cache_key, payload=value, timestamp=self._clock())
        self._memory[cache_key] = entry
        try:
            self.store.set_page_cache(entry)
        except StorageError as e:
            logger.warning(f"Page cache {cache_key} kept in memory only: {e.detail}")
        return entry

    def is_stale(self, entry: CachePageEntry, ttl: Optional[float] = None) -> bool:
        if ttl is None:
            ttl = self.ttl_for(entry.cache_key)
        return (self._clock() - entry.timestamp) >= ttl

    def invalidate(self, cache_key: Optional[str] = None) -> None:
        """Drop one entry, or every entry when ``cache_key`` is None."""
        if cache_key is None:
            self._memory.clear()
        else:
            self._memory.pop(cache_key, None)
        try:
            self.store.delete_page_cache(cache_key)
        except StorageError as e:
            logger.warning(f"Could not clear page cache: {e.detail}")

    def _entry(self, cache_key: str) -> Optional[CachePageEntry]:
        entry = self._memory.get(cache_key)
        if entry is None:
            entry = self.store.get_page_cache(cache_key)
            if entry is not None:
                self._memory[cache_key] = entry
        return entry

    async def read_through(
        self,
        cache_key: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        online: Online = True,
        empty: Any = None,
        force: bool = False,
    ) -> PageResult:
        """Serve a fresh entry, else refill from ``loader`` when online.

        Offline (or when the refill fails) the stored entry is returned
        regardless of age; with nothing stored the result carries ``empty``.
        """
        entry = self._entry(cache_key)
        if entry is not None and not force and not self.is_stale(entry):
            return PageResult(entry.payload, self._clock() - entry.timestamp, from_cache=True)

        is_online = online() if callable(online) else online
        if is_online:
            try:
                value = await loader()
            except Exception as e:
                if entry is None:
                    raise
                logger.warning(f"Refreshing {cache_key} failed, serving stale copy: {e}")
                return self._stale(entry)
            self.set(cache_key, value)
            return PageResult(value, 0.0)

        if entry is not None:
            logger.debug(f"Offline: serving stored {cache_key}")
            return self._stale(entry)
        return PageResult(empty)

    def _stale(self, entry: CachePageEntry) -> PageResult:
        return PageResult(
            entry.payload,
            self._clock() - entry.timestamp,
            from_cache=True,
            stale=self.is_stale(entry),
        )
