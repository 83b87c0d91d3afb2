"""Authentication lifecycle.

State changes are computed by ``next_auth_state``, a pure reducer over
``AuthState``; ``AuthManager`` owns the session (token, expiry, user
info, return path), applies side effects such as purging cached data,
and broadcasts every transition on the event bus.
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote, urlparse

from .errors import AuthExpiredError, BlockedError, VikingError
from .events import AuthStateChanged, EventBus, LoginPromptRequested
from .observability import ErrorReporter
from .storage import RecordStore
from .types import AuthState, UserInfo

logger = logging.getLogger(__name__)

PROD_HOST_MARKER = ".onrender.com"


class AuthEvent(str, Enum):
    LOGIN = "login"
    AUTH_FAILURE = "auth_failure"  # 401/403 from upstream, or expiry timestamp reached
    RESOLVE_EXPIRY = "resolve_expiry"
    BLOCKED = "blocked"
    LOGOUT = "logout"


def next_auth_state(state: AuthState, event: AuthEvent, has_cache: bool = False) -> AuthState:
    """Pure transition function for the auth lifecycle."""
    if event is AuthEvent.BLOCKED:
        return AuthState.BLOCKED
    if event is AuthEvent.LOGOUT:
        return AuthState.UNAUTHENTICATED
    if state is AuthState.BLOCKED:
        return state
    if event is AuthEvent.LOGIN:
        return AuthState.AUTHENTICATED
    if event is AuthEvent.AUTH_FAILURE:
        return AuthState.EXPIRED if state is AuthState.AUTHENTICATED else state
    if event is AuthEvent.RESOLVE_EXPIRY and state is AuthState.EXPIRED:
        return AuthState.OFFLINE_WITH_CACHE if has_cache else AuthState.UNAUTHENTICATED
    return state


def build_oauth_url(
    *,
    authorize_url: str,
    client_id: str,
    api_url: str,
    scope: str,
    frontend_url: str,
) -> str:
    """OAuth authorization URL.

    ``state`` is ``"<env>&frontend_url=<encoded origin>"`` where env is
    ``prod`` for deployed frontends and ``dev`` otherwise.
    """
    hostname = urlparse(frontend_url).hostname or ""
    env = "prod" if PROD_HOST_MARKER in hostname else "dev"
    state = f"{env}&frontend_url={quote(frontend_url, safe='')}"
    redirect_uri = f"{api_url.rstrip('/')}/oauth/callback"
    return (
        f"{authorize_url}?"
        f"client_id={client_id}&"
        f"redirect_uri={quote(redirect_uri, safe='')}&"
        f"state={quote(state, safe='')}&"
        f"scope={quote(scope, safe='')}&"
        "response_type=code"
    )


class AuthManager:
    """Session-scoped auth state for one process.

    Args:
        settings: Application settings (OAuth and API URLs).
        store: Local store, consulted for cached data and purged on logout.
        bus: Event bus receiving ``AuthStateChanged`` and ``LoginPromptRequested``.
        login_handler: Called when the user confirms a login prompt.
    """

    def __init__(
        self,
        settings: Any,
        store: RecordStore,
        bus: EventBus,
        *,
        login_handler: Optional[Callable[[], Any]] = None,
        reporter: Optional[ErrorReporter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.bus = bus
        self.reporter = reporter
        self._login_handler = login_handler
        self._clock = clock
        self._state = AuthState.UNAUTHENTICATED
        self._session: Dict[str, Any] = {}
        self._blocked_reason: Optional[str] = None
        self._prompt_shown = False

    # === State ===

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is AuthState.AUTHENTICATED

    @property
    def is_blocked(self) -> bool:
        return self._blocked_reason is not None

    @property
    def has_auth_failed(self) -> bool:
        return self._prompt_shown

    @property
    def user_info(self) -> Optional[UserInfo]:
        return self._session.get("user_info")

    def _transition(self, event: AuthEvent, reason: Optional[str] = None) -> AuthState:
        previous = self._state
        has_cache = event is AuthEvent.RESOLVE_EXPIRY and self.store.has_offline_data()
        current = next_auth_state(previous, event, has_cache)
        if current is previous:
            return current
        self._state = current
        logger.info(f"Auth state {previous.value} -> {current.value} ({reason or event.value})")
        self.bus.publish(AuthStateChanged(previous=previous, current=current, reason=reason or event.value))
        return current

    # === Login ===

    def build_oauth_url(self, frontend_url: Optional[str] = None) -> str:
        if not self.settings.oauth_client_id:
            raise ValueError("OAUTH_CLIENT_ID is not configured")
        return build_oauth_url(
            authorize_url=self.settings.oauth_authorize_url,
            client_id=self.settings.oauth_client_id,
            api_url=self.settings.api_url,
            scope=self.settings.oauth_scope,
            frontend_url=frontend_url or self.settings.frontend_url,
        )

    def store_return_path(self, path: str) -> None:
        """Remember where to send the user after the OAuth round trip."""
        self._session["return_path"] = path

    def complete_login(self, token: str, expires_at: Optional[float] = None) -> Optional[str]:
        """Accept a token from the OAuth callback.

        Returns the stored return path, if any, and clears it.

        Raises:
            BlockedError: If upstream access was blocked earlier this session.
        """
        if not token:
            raise ValueError("Empty access token")
        if self.is_blocked:
            raise BlockedError(f"Upstream blocked: {self._blocked_reason}", context="log in")
        self._session["token"] = token
        self._session["expires_at"] = expires_at
        self._prompt_shown = False
        self._transition(AuthEvent.LOGIN, "login")
        return self._session.pop("return_path", None)

    def set_user_info(self, info: Any) -> None:
        if isinstance(info, dict):
            info = UserInfo(
                user_id=info.get("user_id"),
                first_name=info.get("first_name"),
                last_name=info.get("last_name"),
                email=info.get("email"),
            )
        self._session["user_info"] = info

    # === Token ===

    def is_token_expired(self) -> bool:
        expires_at = self._session.get("expires_at")
        return expires_at is not None and self._clock() >= float(expires_at)

    def access_token(self) -> Optional[str]:
        """Current token, or None when absent or expired.

        Reaching the expiry timestamp counts as an auth failure.
        """
        if self._state is not AuthState.AUTHENTICATED:
            return None
        if self.is_token_expired():
            self.on_auth_failure(401, "token expired")
            return None
        return self._session.get("token")

    # === Failures ===

    def on_auth_failure(self, status: int = 401, message: str = "") -> None:
        """Handle a 401/403 observed upstream (or a reached expiry)."""
        if self._state is not AuthState.AUTHENTICATED:
            return
        logger.warning(f"Authentication failed ({status}): {message or 'no detail'}")
        self._transition(AuthEvent.AUTH_FAILURE, f"http {status}")
        resolved = self._transition(AuthEvent.RESOLVE_EXPIRY, "token expired")
        if resolved is AuthState.UNAUTHENTICATED:
            logger.info("No cached data; purging session")
            self._clear_session()
            if self.store.is_initialized:
                self.store.purge_cached_data()
        self.request_login("Your session has expired")

    def mark_blocked(self, reason: str) -> None:
        """Enter Blocked for the rest of this session."""
        self._blocked_reason = reason
        self._transition(AuthEvent.BLOCKED, reason)
        if self.reporter is not None:
            self.reporter.capture_message("Upstream access blocked", "error", {"reason": reason})

    # === Login prompt circuit breaker ===

    def request_login(self, reason: Optional[str] = None) -> bool:
        """Ask the UI for a login once per expiry episode.

        Returns True if a prompt was emitted.
        """
        if self._prompt_shown:
            return False
        self._prompt_shown = True
        self.bus.publish(
            LoginPromptRequested(on_confirm=self._login_handler, on_cancel=None, reason=reason)
        )
        return True

    def reset_auth_prompt(self) -> None:
        self._prompt_shown = False

    # === Guards ===

    def can_call_upstream(self, request: Any = None) -> Optional[VikingError]:
        """Governor gate: None when an authenticated call may go out."""
        if self.is_blocked or self._state is AuthState.BLOCKED:
            return BlockedError(f"Upstream blocked: {self._blocked_reason}")
        if self._state is AuthState.AUTHENTICATED and self.is_token_expired():
            self.on_auth_failure(401, "token expired")
        if self._state is not AuthState.AUTHENTICATED:
            return AuthExpiredError(f"Cannot call upstream while {self._state.value}")
        return None

    def require_write(self, action: str) -> None:
        """Reject mutations unless the session is live.

        Raises:
            BlockedError: While blocked.
            AuthExpiredError: While expired, offline-with-cache or signed out.
        """
        refusal = self.can_call_upstream()
        if refusal is not None:
            refusal.context = action
            raise refusal

    # === Logout ===

    def _clear_session(self) -> None:
        self._session.pop("token", None)
        self._session.pop("expires_at", None)
        self._session.pop("user_info", None)

    def logout(self) -> None:
        """Sign out: drop the token and user info and purge cached entities."""
        self._clear_session()
        self._session.pop("return_path", None)
        self._prompt_shown = False
        if self.store.is_initialized:
            self.store.purge_cached_data()
        self._transition(AuthEvent.LOGOUT, "logout")
