"""Per-record version tracking for sync ingestion and local edits.

Rows are plain dicts of content columns plus the version columns from
``schema.VERSION_COLUMNS``. These functions compute the row to store;
they never touch a backend, so both the SQL and keyed backends share the
same observable contract:

- Ingest of unchanged server content leaves the row byte-identical.
- Ingest over an unmodified row overwrites it and advances
  ``last_sync_version``.
- Ingest of changed server content over a locally modified row takes the
  server fields, keeps the local version counters and the local field
  values (``local_snapshot``), and flags ``conflict_resolution_needed``.
- A local edit bumps ``local_version`` past ``last_sync_version`` and
  sets ``is_locally_modified``.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Iterable, Optional

from .schema import VERSION_COLUMNS

logger = logging.getLogger(__name__)


def content_hash(content: Dict[str, Any]) -> str:
    """Stable digest of a row's content columns."""
    encoded = json.dumps(content, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def content_of(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if k not in VERSION_COLUMNS}


def _flag(value: Any) -> bool:
    return bool(value)


def ingest_server_row(
    existing: Optional[Dict[str, Any]],
    content: Dict[str, Any],
    now: str,
    remote_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Row to store after ingesting ``content`` from the server."""
    digest = content_hash(content)

    if existing is None:
        version = remote_version or 1
        return {
            **content,
            "version": version,
            "local_version": version,
            "last_sync_version": version,
            "is_locally_modified": False,
            "updated_at": now,
            "last_synced_at": now,
            "conflict_resolution_needed": False,
            "server_hash": digest,
            "local_snapshot": None,
        }

    current_version = int(existing.get("version") or 1)
    last_sync_version = int(existing.get("last_sync_version") or 0)
    local_version = int(existing.get("local_version") or last_sync_version)

    if remote_version is not None:
        server_changed = remote_version > last_sync_version or digest != existing.get("server_hash")
        new_version = max(remote_version, current_version)
    else:
        server_changed = digest != existing.get("server_hash")
        new_version = current_version + 1 if server_changed else current_version

    if not server_changed:
        return dict(existing)

    if _flag(existing.get("is_locally_modified")):
        snapshot = existing.get("local_snapshot") or content_of(existing)
        logger.info("Conflict: server update over locally modified row %s", _describe(content))
        return {
            **content,
            "version": new_version,
            "local_version": local_version,
            "last_sync_version": last_sync_version,
            "is_locally_modified": True,
            "updated_at": existing.get("updated_at"),
            "last_synced_at": now,
            "conflict_resolution_needed": True,
            "server_hash": digest,
            "local_snapshot": snapshot,
        }

    return {
        **content,
        "version": new_version,
        "local_version": new_version,
        "last_sync_version": new_version,
        "is_locally_modified": False,
        "updated_at": now,
        "last_synced_at": now,
        "conflict_resolution_needed": False,
        "server_hash": digest,
        "local_snapshot": None,
    }


def apply_local_edit(existing: Dict[str, Any], changes: Dict[str, Any], now: str) -> Dict[str, Any]:
    """Row to store after a leader edits it on this device."""
    row = dict(existing)
    row.update({k: v for k, v in changes.items() if k not in VERSION_COLUMNS})
    last_sync_version = int(existing.get("last_sync_version") or 0)
    local_version = int(existing.get("local_version") or last_sync_version)
    row["local_version"] = max(local_version, last_sync_version) + 1
    row["is_locally_modified"] = True
    row["updated_at"] = now
    if _flag(existing.get("conflict_resolution_needed")) and existing.get("local_snapshot"):
        # Keep the retained local copy in step with further edits
        snapshot = dict(existing["local_snapshot"])
        snapshot.update({k: v for k, v in changes.items() if k not in VERSION_COLUMNS})
        row["local_snapshot"] = snapshot
    return row


def resolve_conflict(existing: Dict[str, Any], keep_local: bool, now: str) -> Dict[str, Any]:
    """Clear a conflict, keeping either the server copy or the local copy."""
    row = dict(existing)
    version = int(existing.get("version") or 1)
    if keep_local and existing.get("local_snapshot"):
        row.update(existing["local_snapshot"])
        row["last_sync_version"] = version
        row["local_version"] = version + 1
        row["is_locally_modified"] = True
    else:
        row["last_sync_version"] = version
        row["local_version"] = version
        row["is_locally_modified"] = False
    row["conflict_resolution_needed"] = False
    row["local_snapshot"] = None
    row["updated_at"] = now
    return row


def version_invariant_holds(row: Dict[str, Any]) -> bool:
    """``local_version > last_sync_version`` iff ``is_locally_modified``."""
    ahead = int(row.get("local_version") or 0) > int(row.get("last_sync_version") or 0)
    return ahead == _flag(row.get("is_locally_modified"))


def _describe(content: Dict[str, Any], keys: Iterable[str] = ("event_id", "scout_id", "section_id")) -> str:
    return ", ".join(f"{k}={content[k]}" for k in keys if k in content)
