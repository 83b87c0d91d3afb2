"""Narrow interface to external observability sinks.

The core never talks to an error-reporting service directly; it hands
exceptions and messages to an ``ErrorReporter``. The default reporter
writes to the standard logging tree.
"""

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@runtime_checkable
class ErrorReporter(Protocol):
    def capture_exception(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        ...

    def capture_message(
        self, message: str, level: str = "info", context: Optional[Dict[str, Any]] = None
    ) -> None:
        ...


class LoggingReporter:
    """ErrorReporter backed by ``logging``."""

    def __init__(self, name: str = "viking_sync.reporter"):
        self._logger = logging.getLogger(name)

    def capture_exception(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        self._logger.error("%s: %s %s", type(exc).__name__, exc, context or {})

    def capture_message(
        self, message: str, level: str = "info", context: Optional[Dict[str, Any]] = None
    ) -> None:
        self._logger.log(_LEVELS.get(level, logging.INFO), "%s %s", message, context or {})


def configure_logging(level: str = "WARNING") -> None:
    """Install a basic logging configuration for entry points."""
    logging.basicConfig(
        level=_LEVELS.get(level.lower(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
