"""Typed upstream endpoints.

Each method queues one request on the governor and returns normalised
record dicts. Validation and persistence happen in the caller.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from ..errors import RecordValidationError
from . import payloads
from .governor import ApiGovernor, ApiRequest, Priority

logger = logging.getLogger(__name__)

FLEXI_COLUMN_PATTERN = re.compile(r"^f_\d+$")


class OsmClient:
    """Upstream API calls routed through an ``ApiGovernor``."""

    def __init__(self, governor: ApiGovernor):
        self.governor = governor

    async def _get(
        self, name: str, path: str, params: Optional[Dict[str, Any]] = None, priority: Priority = Priority.NORMAL
    ) -> Any:
        response = await self.governor.request(
            ApiRequest(name=name, path=path, params=params, priority=priority)
        )
        return response.data

    async def _post(self, name: str, path: str, body: Dict[str, Any], priority: Priority = Priority.NORMAL) -> Any:
        response = await self.governor.request(
            ApiRequest(name=name, path=path, method="POST", json=body, priority=priority)
        )
        return response.data

    # === Reference data ===

    async def get_user_roles(self) -> List[Dict[str, Any]]:
        data = await self._get("getUserRoles", "/get-user-roles", priority=Priority.HIGH)
        return payloads.normalize_user_roles(data)

    async def get_startup_data(self) -> Dict[str, Any]:
        data = await self._get("getStartupData", "/get-startup-data", priority=Priority.HIGH)
        return data if isinstance(data, dict) else {}

    async def get_user_info(self) -> Dict[str, Any]:
        return payloads.normalize_startup(await self.get_startup_data())

    async def get_terms(self) -> Dict[int, List[Dict[str, Any]]]:
        data = await self._get("getTerms", "/get-terms", priority=Priority.HIGH)
        return payloads.normalize_terms(data)

    # === Events and attendance ===

    async def get_events(self, section_id: int, term_id: str) -> List[Dict[str, Any]]:
        data = await self._get(
            "getEvents", "/get-events", {"sectionid": section_id, "termid": term_id}
        )
        return [{**e, "section_id": section_id} if isinstance(e, dict) else e for e in payloads.items_of(data)]

    async def get_event_attendance(self, section_id: int, term_id: str, event_id: str) -> List[Dict[str, Any]]:
        data = await self._get(
            "getEventAttendance",
            "/get-event-attendance",
            {"sectionid": section_id, "termid": term_id, "eventid": event_id},
        )
        return payloads.items_of(data)

    async def get_shared_event_attendance(self, event_id: str, section_id: int) -> Dict[str, Any]:
        """Raw combined-attendance body (``combined_attendance``, ``summary``, ``sections``)."""
        data = await self._get(
            "getSharedEventAttendance",
            "/get-shared-event-attendance",
            {"eventid": event_id, "sectionid": section_id},
        )
        if not isinstance(data, dict):
            return {"combined_attendance": [], "summary": {}, "sections": []}
        return {k: v for k, v in data.items() if k != "_rateLimitInfo"}

    # === Members ===

    async def get_members_grid(self, section_id: int, term_id: Optional[str]) -> List[Dict[str, Any]]:
        data = await self._post(
            "getMembersGrid", "/get-members-grid", {"section_id": section_id, "term_id": term_id}
        )
        return payloads.normalize_members(data, section_id)

    # === FlexiRecords ===

    async def get_flexi_records(self, section_id: int, archived: str = "n") -> List[Dict[str, Any]]:
        data = await self._get(
            "getFlexiRecords", "/get-flexi-records", {"sectionid": section_id, "archived": archived}
        )
        return [{**r, "section_id": section_id} for r in payloads.items_of(data) if isinstance(r, dict)]

    async def get_flexi_structure(self, extra_id: str, section_id: int, term_id: str) -> Optional[Dict[str, Any]]:
        data = await self._get(
            "getFlexiStructure",
            "/get-flexi-structure",
            {"flexirecordid": extra_id, "sectionid": section_id, "termid": term_id},
        )
        return payloads.normalize_flexi_structure(data, str(extra_id))

    async def get_single_flexi_record(self, extra_id: str, section_id: int, term_id: str) -> List[Dict[str, Any]]:
        data = await self._get(
            "getSingleFlexiRecord",
            "/get-single-flexi-record",
            {"flexirecordid": extra_id, "sectionid": section_id, "termid": term_id},
        )
        return payloads.normalize_flexi_data(data)

    async def update_flexi_record(
        self,
        section_id: int,
        scout_id: int,
        extra_id: str,
        column_id: str,
        value: Any,
        term_id: str,
        section_type: Optional[str],
    ) -> Any:
        """Set one FlexiRecord cell upstream.

        Raises:
            RecordValidationError: If ``column_id`` is not an ``f_<n>`` column.
        """
        if not isinstance(column_id, str) or not FLEXI_COLUMN_PATTERN.match(column_id):
            raise RecordValidationError(
                f"Invalid FlexiRecord column {column_id!r}; expected f_<number>",
                issues=[{"loc": "column_id", "msg": "must match ^f_\\d+$"}],
                context="update flexi record",
            )
        body = {
            "sectionid": section_id,
            "scoutid": scout_id,
            "flexirecordid": extra_id,
            "columnid": column_id,
            "value": value,
            "termid": term_id,
            "section": section_type,
        }
        return await self._post("updateFlexiRecord", "/update-flexi-record", body, priority=Priority.HIGH)

    async def health(self) -> Dict[str, Any]:
        return await self.governor.probe()
