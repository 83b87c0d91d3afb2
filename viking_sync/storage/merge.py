"""Accumulating merge for member rows.

A member can belong to several sections whose fetches arrive in any
order. Opaque maps are deep-merged (newer keys win on collision) and
scalars take the newer non-null value, so ingesting sections' payloads in
any order converges on the same row.
"""

from typing import Any, Dict, Optional

from .schema import BOOLEAN_COLUMNS

MEMBER_MAP_COLUMNS = ("contact_groups", "custom_data", "flattened_fields", "read_only")


def deep_merge(base: Any, newer: Any) -> Any:
    """Recursively merge ``newer`` into ``base`` without mutating either."""
    if not isinstance(base, dict) or not isinstance(newer, dict):
        return newer if newer is not None else base
    merged = dict(base)
    for key, value in newer.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        elif value is not None:
            merged[key] = value
        else:
            merged.setdefault(key, None)
    return merged


def merge_member_content(
    existing: Optional[Dict[str, Any]], incoming: Dict[str, Any]
) -> Dict[str, Any]:
    """Merge an incoming core-member row onto the stored one."""
    if not existing:
        return dict(incoming)
    merged: Dict[str, Any] = {}
    for column in set(existing) | set(incoming):
        old = existing.get(column)
        new = incoming.get(column)
        if column in MEMBER_MAP_COLUMNS:
            merged[column] = deep_merge(old or {}, new or {})
        elif new is not None:
            merged[column] = new
        else:
            merged[column] = old
    for column in BOOLEAN_COLUMNS:
        if column in merged and merged[column] is not None:
            merged[column] = bool(merged[column])
    return merged
