"""Sync orchestration: stages, term selection and shared-event detection."""

from .orchestrator import (
    DISPLAY_WINDOW_FUTURE_DAYS,
    DISPLAY_WINDOW_PAST_DAYS,
    FLEXI_PRELOAD_NAMES,
    SyncOrchestrator,
    in_display_window,
)
from .shared_events import detect_shared_events, group_shared_events, shared_metadata_for
from .terms import current_term_record, select_current_term

__all__ = [
    "DISPLAY_WINDOW_FUTURE_DAYS",
    "DISPLAY_WINDOW_PAST_DAYS",
    "FLEXI_PRELOAD_NAMES",
    "SyncOrchestrator",
    "current_term_record",
    "detect_shared_events",
    "group_shared_events",
    "in_display_window",
    "select_current_term",
    "shared_metadata_for",
]
