"""Application context.

One object holding every component of a running app, built once per
process. Components get their collaborators from here instead of from
module globals.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from .api import ApiGovernor, HttpTransport, OsmClient
from .auth import AuthManager
from .cache import PageCache
from .config import Settings, get_settings
from .connectivity import ConnectivityMonitor
from .events import EventBus
from .observability import ErrorReporter, LoggingReporter
from .pages import PageDataService
from .storage import RecordStore, open_store
from .sync import SyncOrchestrator
from .writes import WriteService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    bus: EventBus
    reporter: ErrorReporter
    store: RecordStore
    transport: HttpTransport
    governor: ApiGovernor
    client: OsmClient
    auth: AuthManager
    connectivity: ConnectivityMonitor
    orchestrator: SyncOrchestrator
    pages: PageDataService
    writes: WriteService

    async def start(self) -> None:
        """Begin connectivity probing and auto-sync."""
        self.orchestrator.attach()
        self.connectivity.start()

    async def close(self) -> None:
        self.orchestrator.detach()
        await self.connectivity.stop()
        await self.governor.close()
        await self.transport.close()
        self.store.close()


def create_app_context(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RecordStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    reporter: Optional[ErrorReporter] = None,
    login_handler: Optional[Callable[[], Any]] = None,
    **governor_kwargs: Any,
) -> AppContext:
    """Build and wire every component.

    Args:
        settings: Defaults to ``get_settings()``.
        store: An initialized store; opened from settings when omitted.
        http_client: Passed to the transport (tests use ``httpx.MockTransport``).
        governor_kwargs: Overrides for ``ApiGovernor`` (clock, sleep, rng).
    """
    settings = settings or get_settings()
    reporter = reporter or LoggingReporter()
    bus = EventBus()
    if store is None:
        store = open_store(settings, reporter)

    auth = AuthManager(settings, store, bus, login_handler=login_handler, reporter=reporter)
    transport = HttpTransport(
        settings.api_url,
        token_provider=auth.access_token,
        client=http_client,
        app_version=settings.app_version,
    )
    governor = ApiGovernor.from_settings(settings, transport, bus=bus, reporter=reporter, **governor_kwargs)
    governor.set_auth_gate(auth.can_call_upstream)
    governor.set_auth_failure_handler(auth.on_auth_failure)
    governor.set_blocked_handler(auth.mark_blocked)

    client = OsmClient(governor)
    connectivity = ConnectivityMonitor(governor.probe, bus)
    orchestrator = SyncOrchestrator(store, client, governor, auth, bus, settings=settings, reporter=reporter)
    pages = PageDataService(
        PageCache(store),
        store,
        client,
        auth,
        orchestrator,
        is_online=lambda: connectivity.is_online and connectivity.api_reachable is not False,
    )
    writes = WriteService(store, client, auth)
    logger.debug(f"App context ready ({store.backend_name} store, demo={settings.demo_mode})")
    return AppContext(
        settings=settings,
        bus=bus,
        reporter=reporter,
        store=store,
        transport=transport,
        governor=governor,
        client=client,
        auth=auth,
        connectivity=connectivity,
        orchestrator=orchestrator,
        pages=pages,
        writes=writes,
    )
