"""Mutating operations.

Every mutation passes the auth write-guard first: nothing is written
while the session is expired, offline-with-cache, signed out or blocked.
"""

import logging
from typing import Any, Optional

from .api import OsmClient
from .auth import AuthManager
from .storage import RecordStore
from .types import Attendance, FlexiData

logger = logging.getLogger(__name__)


class WriteService:
    def __init__(self, store: RecordStore, client: OsmClient, auth: AuthManager):
        self.store = store
        self.client = client
        self.auth = auth

    async def update_flexi_record(
        self,
        section_id: int,
        scout_id: int,
        extra_id: str,
        column_id: str,
        value: Any,
        term_id: str,
        section_type: Optional[str] = None,
    ) -> FlexiData:
        """Set one FlexiRecord cell upstream, then mirror it locally.

        Raises:
            AuthExpiredError, BlockedError: If the session cannot write.
            RecordValidationError: If ``column_id`` is not an ``f_<n>`` column.
        """
        self.auth.require_write("update the record")
        if section_type is None:
            section = self.store.get_section(section_id)
            section_type = section.section_type if section else None
        await self.client.update_flexi_record(
            section_id, scout_id, extra_id, column_id, value, term_id, section_type
        )
        row = self.store.update_flexi_value(extra_id, section_id, term_id, scout_id, column_id, value)
        logger.info(f"Updated FlexiRecord {extra_id} column {column_id} for scout {scout_id}")
        return row

    def record_attendance_change(
        self, event_id: str, scout_id: int, shared: bool = False, **fields: Any
    ) -> Attendance:
        """Record a leader's attendance edit on this device.

        Raises:
            AuthExpiredError, BlockedError: If the session cannot write.
            ValueError: For fields other than attending, patrol and notes.
        """
        self.auth.require_write("change attendance")
        return self.store.record_attendance_edit(event_id, scout_id, fields, shared=shared)
