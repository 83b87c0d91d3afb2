"""Storage key patterns and demo-mode filtering.

Keys in the auxiliary key-value store follow the app's historical
patterns and gain a ``demo_`` prefix in demo mode so demo content never
lands in a real user's cache.
"""

from typing import Any, Optional

DEMO_PREFIX = "demo_"
DEMO_NAME_PREFIX = "Demo "

LAST_SYNC_KEY = "viking_last_sync"
PAGE_CACHE_PREFIX = "page_cache_"

# Metadata keys kept across logout
RETAINED_METADATA_KEYS = frozenset({"schema_version", "app_version"})


def with_prefix(key: str, demo_mode: bool) -> str:
    return f"{DEMO_PREFIX}{key}" if demo_mode else key


def shared_attendance_key(event_id: Any, section_id: Any, demo_mode: bool = False) -> str:
    return with_prefix(f"viking_shared_attendance_{event_id}_{section_id}_offline", demo_mode)


def page_cache_key(cache_key: str, demo_mode: bool = False) -> str:
    return with_prefix(f"{PAGE_CACHE_PREFIX}{cache_key}", demo_mode)


def is_demo_value(value: Optional[Any]) -> bool:
    """True for identifiers or names carrying the demo sentinel."""
    if not isinstance(value, str):
        return False
    return value.startswith(DEMO_PREFIX) or value.startswith(DEMO_NAME_PREFIX)


def is_demo_row(row: dict, *fields: str) -> bool:
    return any(is_demo_value(row.get(f)) for f in fields)
