"""Typed event bus.

Components broadcast status transitions here. Delivery is synchronous on
the calling thread; an event published from inside a listener is queued
and delivered after the current one, so every listener sees events in
publish order.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Type

from .types import AuthState, SyncStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectivityChanged:
    is_online: bool
    api_reachable: Optional[bool]
    previous_api_reachable: Optional[bool] = None


@dataclass(frozen=True)
class AuthStateChanged:
    previous: AuthState
    current: AuthState
    reason: Optional[str] = None


@dataclass(frozen=True)
class SyncProgress:
    stage: SyncStage
    message: str
    counts: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SyncCompleted:
    stage: SyncStage
    summary: Any


@dataclass(frozen=True)
class SyncFailed:
    stage: SyncStage
    error: Optional[BaseException]
    cancelled: bool = False


@dataclass(frozen=True)
class LoginPromptRequested:
    on_confirm: Optional[Callable[[], Any]] = None
    on_cancel: Optional[Callable[[], Any]] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class RateLimitStatus:
    """Governor queue status, published whenever it changes."""

    queue_length: int
    processing: bool
    rate_limited: bool
    rate_limit_remaining: float = 0.0


Listener = Callable[[Any], None]


class EventBus:
    """Synchronous typed pub/sub."""

    def __init__(self):
        self._listeners: Dict[Optional[Type], List[Listener]] = {}
        self._pending: Deque[Any] = deque()
        self._delivering = False

    def subscribe(self, event_type: Optional[Type], listener: Listener) -> Callable[[], None]:
        """Register a listener for one event type (``None`` for all events).

        Returns a callable that deregisters the listener.
        """
        self._listeners.setdefault(event_type, []).append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, listener)

        return unsubscribe

    def unsubscribe(self, event_type: Optional[Type], listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event_type: Optional[Type] = None) -> int:
        return len(self._listeners.get(event_type, []))

    def publish(self, event: Any) -> None:
        self._pending.append(event)
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._delivering = False

    def _deliver(self, event: Any) -> None:
        targets = list(self._listeners.get(type(event), [])) + list(self._listeners.get(None, []))
        for listener in targets:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", type(event).__name__)
