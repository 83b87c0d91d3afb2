"""
viking_sync - Offline-first sync and caching core for the Viking event management app.

Keeps sections, terms, events, attendance, members and FlexiRecords from
Online Scout Manager in a local store so leaders can work without signal.
"""

from .config import Settings, get_settings
from .context import AppContext, create_app_context
from .errors import ErrorKind, VikingError, user_message

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("viking-sync")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "AppContext",
    "ErrorKind",
    "Settings",
    "VikingError",
    "create_app_context",
    "get_settings",
    "user_message",
]
