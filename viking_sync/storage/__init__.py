"""Local store backends.

Offline-first persistence for sections, terms, events, attendance,
members and FlexiRecords. SQLite is preferred; the keyed object store
is the fallback where SQLite cannot be opened.
"""

import logging
from typing import TYPE_CHECKING, Optional

from ..errors import StorageError
from ..observability import ErrorReporter
from .base import StoreTransaction
from .keyed import KeyedObjectStore
from .records import RecordStore
from .sqlite import SQLiteStore

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


def open_store(settings: "Settings", reporter: Optional[ErrorReporter] = None) -> RecordStore:
    """Create and initialize the configured store.

    ``auto`` tries SQLite first and falls back to the keyed store.
    """
    common = {"demo_mode": settings.demo_mode, "reporter": reporter}
    if settings.store_backend in ("auto", "sqlite"):
        store: RecordStore = SQLiteStore(settings.db_path, **common)
        try:
            store.initialize()
            return store
        except StorageError as e:
            if settings.store_backend == "sqlite":
                raise
            logger.warning(f"SQLite unavailable ({e.detail}), falling back to keyed store")
            if reporter is not None:
                reporter.capture_message("Falling back to keyed store", "warning", {"error": e.detail})

    store = KeyedObjectStore(settings.keyed_store_path, **common)
    store.initialize()
    return store


__all__ = [
    "KeyedObjectStore",
    "RecordStore",
    "SQLiteStore",
    "StoreTransaction",
    "open_store",
]
