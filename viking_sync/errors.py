"""Error taxonomy and the user-message translator.

Every failure the core surfaces is a ``VikingError`` subclass carrying an
``ErrorKind``. Operator detail stays on the exception; the text a leader
sees comes only from ``user_message()``.
"""

import logging
import sqlite3
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    STORAGE = "storage"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    BLOCKED = "blocked"
    NOT_FOUND = "not_found"
    SYNC = "sync"
    UNKNOWN = "unknown"


class VikingError(Exception):
    """Base error with a kind, operator detail and optional cause.

    Args:
        detail: Operator-oriented description.
        context: Short verb phrase for the failed action ("load events").
        status: HTTP status when the error came from upstream.
        cause: The underlying exception, if any.
    """

    kind = ErrorKind.UNKNOWN
    retryable = False

    def __init__(
        self,
        detail: str = "",
        *,
        context: Optional[str] = None,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(detail or self.kind.value)
        self.detail = detail or self.kind.value
        self.context = context
        self.status = status
        self.cause = cause

    @property
    def user_message(self) -> Optional[str]:
        return user_message(self, self.context)

    @property
    def is_retryable(self) -> bool:
        return self.retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "detail": self.detail,
            "context": self.context,
            "status": self.status,
        }


class RecordValidationError(VikingError):
    """A payload failed schema validation."""

    kind = ErrorKind.VALIDATION

    def __init__(self, detail: str = "", *, issues: Optional[List[Dict[str, Any]]] = None, **kwargs):
        super().__init__(detail, **kwargs)
        self.issues = issues or []


class StorageError(VikingError):
    kind = ErrorKind.STORAGE


class NetworkError(VikingError):
    kind = ErrorKind.NETWORK
    retryable = True


class RateLimitedError(VikingError):
    """Upstream asked us to slow down; ``retry_after`` is in seconds."""

    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(self, detail: str = "", *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(detail, **kwargs)
        self.retry_after = retry_after


class AuthExpiredError(VikingError):
    kind = ErrorKind.AUTH_EXPIRED


class BlockedError(VikingError):
    kind = ErrorKind.BLOCKED


class NotFoundError(VikingError):
    kind = ErrorKind.NOT_FOUND


class SyncError(VikingError):
    """A sync stage failed; ``failures`` lists the isolated per-item errors."""

    kind = ErrorKind.SYNC

    def __init__(self, detail: str = "", *, failures: Optional[List[Dict[str, Any]]] = None, **kwargs):
        super().__init__(detail, **kwargs)
        self.failures = failures or []


class UnknownError(VikingError):
    kind = ErrorKind.UNKNOWN


# =============================================================================
# User copy
# =============================================================================

USER_MESSAGES: Dict[ErrorKind, Optional[str]] = {
    ErrorKind.VALIDATION: "Some records could not be read and were skipped.",
    ErrorKind.STORAGE: "Local cache error. Your data could not be saved on this device.",
    ErrorKind.NETWORK: "Unable to connect to the server. Check your internet connection and try again.",
    ErrorKind.RATE_LIMITED: None,  # silent, the queue retries on its own
    ErrorKind.AUTH_EXPIRED: "Your session has expired. Please log in again to continue.",
    ErrorKind.BLOCKED: "Access to Online Scout Manager has been blocked. Please contact your administrator.",
    ErrorKind.NOT_FOUND: "The requested information could not be found.",
    ErrorKind.SYNC: "Some data could not be refreshed. Showing the most recent saved copy.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}

OFFLINE_ERROR_PATTERNS = (
    "failed to fetch",
    "network",
    "offline",
    "timeout",
    "timed out",
    "connection",
)

TOKEN_EXPIRED_PATTERNS = (
    "token expired",
    "token has expired",
    "invalid token",
    "unauthorized",
)


def user_message(error: BaseException, context: Optional[str] = None) -> Optional[str]:
    """Translate an error into the text shown to a leader.

    Returns None for errors that are handled silently (rate limiting).
    """
    kind = error.kind if isinstance(error, VikingError) else classify(error).kind
    message = USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.UNKNOWN])
    if message is None:
        return None
    if context:
        return f"Unable to {context}. {message}"
    return message


def is_offline_error(error: BaseException) -> bool:
    """Heuristic match for failures that mean 'no connectivity'."""
    if isinstance(error, (httpx.TransportError, TimeoutError)):
        return True
    if isinstance(error, NetworkError):
        return True
    text = str(error).lower()
    return any(pattern in text for pattern in OFFLINE_ERROR_PATTERNS)


def is_token_expired_message(text: Optional[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(pattern in lowered for pattern in TOKEN_EXPIRED_PATTERNS)


def classify(error: BaseException, context: Optional[str] = None) -> VikingError:
    """Wrap an arbitrary exception into the taxonomy."""
    if isinstance(error, VikingError):
        return error
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return NetworkError(f"Request timed out: {error}", context=context, cause=error)
    if isinstance(error, httpx.TransportError):
        return NetworkError(f"Connection failed: {error}", context=context, cause=error)
    if isinstance(error, (sqlite3.Error, OSError)):
        return StorageError(str(error), context=context, cause=error)
    if isinstance(error, PydanticValidationError):
        return RecordValidationError(
            str(error), issues=error.errors(include_url=False), context=context, cause=error
        )
    if is_offline_error(error):
        return NetworkError(str(error), context=context, cause=error)
    return UnknownError(str(error), context=context, cause=error)
