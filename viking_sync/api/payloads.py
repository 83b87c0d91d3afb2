"""Unwrapping and normalising upstream response bodies.

Upstream responses wrap their records in a handful of envelopes and use
several spellings for the same identifiers. These helpers turn a raw
body into plain record dicts that the validation layer accepts; they
never raise on shape problems, they log and return what they can.
"""

import logging
from typing import Any, Dict, List, Optional

from ..types import person_type_for_patrol

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "y", "yes", "true"}


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _first(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def items_of(data: Any, key: str = "items") -> List[Any]:
    """Unwrap ``{"items": [...]}``; a bare list passes through."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get(key)
        if isinstance(items, list):
            return items
    return []


def normalize_user_roles(data: Any) -> List[Dict[str, Any]]:
    """Sections from the user-roles body.

    The body is an object keyed by index. The section id falls back
    through ``sectionid``, ``section_id``, ``id`` and finally the key.
    """
    if isinstance(data, list):
        entries = [(str(i), item) for i, item in enumerate(data)]
    elif isinstance(data, dict):
        entries = [(k, v) for k, v in data.items() if _as_int(k) is not None]
    else:
        logger.warning("Invalid data received from user roles")
        return []

    sections = []
    for key, item in entries:
        if not isinstance(item, dict):
            continue
        raw_id = _first(item, "sectionid", "section_id", "id")
        if raw_id is None:
            raw_id = key
            logger.debug(f"Using fallback section ID {key}")
        section_id = _as_int(raw_id)
        if section_id is None:
            logger.warning(f"Invalid section ID {raw_id!r}, filtering out")
            continue
        name = item.get("sectionname") or item.get("name") or f"Section {section_id}"
        is_default = item.get("isDefault")
        sections.append(
            {
                "section_id": section_id,
                "name": name,
                "section_type": item.get("section") or item.get("sectiontype") or item.get("sectionname"),
                "is_default": is_default in ("1", 1, True),
                "permissions": item.get("permissions") or {},
            }
        )
    return sections


def normalize_terms(data: Any) -> Dict[int, List[Dict[str, Any]]]:
    """Terms grouped by section id; keys starting with ``_`` are metadata."""
    grouped: Dict[int, List[Dict[str, Any]]] = {}
    if not isinstance(data, dict):
        return grouped
    for key, terms in data.items():
        if str(key).startswith("_"):
            continue
        section_id = _as_int(key)
        if section_id is None or not isinstance(terms, list):
            continue
        grouped[section_id] = [
            {**term, "section_id": section_id} for term in terms if isinstance(term, dict)
        ]
    return grouped


def normalize_startup(data: Any) -> Dict[str, Any]:
    """User info from the startup body's ``globals``."""
    globals_ = data.get("globals") if isinstance(data, dict) else None
    if not isinstance(globals_, dict):
        return {}
    return {
        "user_id": globals_.get("userid"),
        "first_name": globals_.get("firstname"),
        "last_name": globals_.get("lastname"),
        "email": globals_.get("email"),
    }


def _has_photo(member: Dict[str, Any]) -> bool:
    value = _first(member, "has_photo", "pic", "photo_guid")
    if isinstance(value, str):
        return value.lower() in _TRUTHY
    return bool(value)


def normalize_member(member: Dict[str, Any], section_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """Canonicalise one members-grid row; None if it has no usable ids."""
    scout_id = _as_int(_first(member, "member_id", "scoutid", "scout_id"))
    member_section = _as_int(_first(member, "section_id", "sectionid"))
    if member_section is None:
        member_section = section_id
    if scout_id is None or member_section is None:
        return None
    patrol_id = _as_int(_first(member, "patrol_id", "patrolid"))

    out = {
        k: v
        for k, v in member.items()
        if k
        not in {
            "member_id",
            "scoutid",
            "sectionid",
            "patrolid",
            "firstname",
            "lastname",
            "dob",
            "pic",
        }
    }
    out.update(
        {
            "scout_id": scout_id,
            "section_id": member_section,
            "first_name": _first(member, "first_name", "firstname"),
            "last_name": _first(member, "last_name", "lastname"),
            "date_of_birth": _first(member, "date_of_birth", "dob"),
            "patrol_id": patrol_id,
            "person_type": member.get("person_type") or person_type_for_patrol(patrol_id),
            "has_photo": _has_photo(member),
        }
    )
    if member.get("age") is not None:
        out["age"] = str(member["age"])
    return out


def normalize_members(data: Any, section_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Members from ``{"data": {"members": [...]}}``."""
    inner = data.get("data") if isinstance(data, dict) else None
    members = inner.get("members") if isinstance(inner, dict) else None
    if not isinstance(members, list):
        return []
    out = []
    for member in members:
        if not isinstance(member, dict):
            continue
        normalized = normalize_member(member, section_id)
        if normalized is None:
            logger.debug("Skipping member row without scout or section id")
            continue
        out.append(normalized)
    return out


def normalize_shared_attendance(data: Any) -> List[Dict[str, Any]]:
    """Rows from ``{"combined_attendance": [...]}``."""
    return [row for row in items_of(data, "combined_attendance") if isinstance(row, dict)]


def normalize_flexi_structure(data: Any, extra_id: str) -> Optional[Dict[str, Any]]:
    if not isinstance(data, dict) or not data:
        return None
    body = {k: v for k, v in data.items() if k != "_rateLimitInfo"}
    body.setdefault("extra_id", extra_id)
    return body


def normalize_flexi_data(data: Any) -> List[Dict[str, Any]]:
    """Member rows of a single FlexiRecord, rate-limit info stripped."""
    return [row for row in items_of(data) if isinstance(row, dict)]
