"""Two-stage sync of upstream data into the local store.

Stage A ("dashboard data") loads the reference data the app cannot start
without: sections, terms, the current term per section, and the
FlexiRecord catalogs and structures the app relies on. Any failure here
aborts the sync with a ``SyncError``.

Stage B ("background data") loads members and events per section, then
attendance for every event in the display window, then shared-event
attendance. Failures for one section or one event are recorded on the
stage result and do not stop the stage; only auth expiry and a block
abort it.
"""

import asyncio
import logging
import time
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..api import ApiGovernor, OsmClient
from ..auth import AuthManager
from ..errors import AuthExpiredError, BlockedError, SyncError, VikingError
from ..events import ConnectivityChanged, EventBus, SyncCompleted, SyncFailed, SyncProgress
from ..observability import ErrorReporter
from ..storage import RecordStore
from ..storage.keys import LAST_SYNC_KEY, shared_attendance_key
from ..types import Event, StageResult, SyncResult, SyncStage, parse_date, utc_now
from .shared_events import detect_shared_events
from .terms import current_term_record, select_current_term

logger = logging.getLogger(__name__)

DISPLAY_WINDOW_PAST_DAYS = 7
DISPLAY_WINDOW_FUTURE_DAYS = 90

# FlexiRecords whose structure is preloaded during Stage A
FLEXI_PRELOAD_NAMES = frozenset({"Viking Event Mgmt", "Viking Section Movers"})

StageFn = Callable[[StageResult], Awaitable[None]]


def in_display_window(event: Event, today: date) -> bool:
    """True if the event starts between a week ago and 90 days ahead, inclusive."""
    start = parse_date(event.start_date)
    if start is None:
        return False
    earliest = today - timedelta(days=DISPLAY_WINDOW_PAST_DAYS)
    latest = today + timedelta(days=DISPLAY_WINDOW_FUTURE_DAYS)
    return earliest <= start <= latest


def _fatal(error: BaseException) -> bool:
    """Errors that make the rest of a stage pointless."""
    return isinstance(error, (AuthExpiredError, BlockedError))


class SyncOrchestrator:
    """Runs the sync stages and reports progress on the event bus.

    Args:
        store: Destination for everything fetched.
        client: Upstream endpoints.
        governor: Used for the batched attendance fan-out.
        auth: Consulted before starting and for auto-sync.
        bus: Receives ``SyncProgress``, ``SyncCompleted`` and ``SyncFailed``.
    """

    def __init__(
        self,
        store: RecordStore,
        client: OsmClient,
        governor: ApiGovernor,
        auth: AuthManager,
        bus: EventBus,
        *,
        settings: Any = None,
        reporter: Optional[ErrorReporter] = None,
        today_fn: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.governor = governor
        self.auth = auth
        self.bus = bus
        self.reporter = reporter
        self._today = today_fn
        self._clock = clock
        self.preload_flexi = getattr(settings, "preload_flexi", True)
        self.fetch_shared_attendance = getattr(settings, "fetch_shared_attendance", True)
        self.batch_size = getattr(settings, "attendance_batch_size", 5)
        self.batch_pause = getattr(settings, "attendance_batch_pause_ms", 500) / 1000.0
        self._syncing = False
        self._task: Optional[asyncio.Task] = None
        self._attendance_future: Optional[asyncio.Future] = None
        self._auto_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # === Wiring ===

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def attach(self) -> None:
        """Start listening for connectivity changes (auto-sync)."""
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(ConnectivityChanged, self._on_connectivity)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_connectivity(self, event: ConnectivityChanged) -> None:
        came_back = event.api_reachable is True and event.previous_api_reachable is False
        if not came_back or not event.is_online:
            return
        if not self.auth.is_authenticated or self._syncing:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Connection restored outside an event loop; auto-sync skipped")
            return
        logger.info("Connection restored; refreshing dashboard data")
        self._auto_task = loop.create_task(self._auto_sync())

    async def _auto_sync(self) -> None:
        try:
            await self.sync_dashboard()
        except VikingError as e:
            logger.warning(f"Auto-sync failed: {e.detail}")

    def _progress(self, stage: SyncStage, message: str, result: Optional[StageResult] = None) -> None:
        counts = dict(result.counts) if result is not None else {}
        self.bus.publish(SyncProgress(stage=stage, message=message, counts=counts))

    def _record_failure(self, result: StageResult, error: BaseException, **scope: Any) -> None:
        if _fatal(error):
            raise error
        detail = error.detail if isinstance(error, VikingError) else str(error)
        kind = error.kind.value if isinstance(error, VikingError) else type(error).__name__
        result.failures.append({**scope, "kind": kind, "error": detail})
        logger.warning(f"{result.stage.value} sync: {scope} failed: {detail}")

    # === Entry points ===

    async def sync_all(self) -> SyncResult:
        """Stage A then Stage B.

        Returns an in-progress result without doing anything if a sync is
        already running.

        Raises:
            SyncError: If a stage aborts.
            AuthExpiredError, BlockedError: If the session cannot call upstream.
        """
        return await self._guarded([
            (SyncStage.DASHBOARD, self._dashboard_stage),
            (SyncStage.BACKGROUND, self._background_stage),
        ])

    async def sync_dashboard(self) -> SyncResult:
        return await self._guarded([(SyncStage.DASHBOARD, self._dashboard_stage)])

    async def sync_background(self) -> SyncResult:
        return await self._guarded([(SyncStage.BACKGROUND, self._background_stage)])

    def cancel(self) -> bool:
        """Cancel the running sync at its next suspension point."""
        if self._task is None or self._task.done():
            return False
        self._task.cancel()
        return True

    async def refresh_attendance_data(self) -> StageResult:
        """Re-fetch attendance for the display window; concurrent callers share one run."""
        if self._attendance_future is not None and not self._attendance_future.done():
            return await asyncio.shield(self._attendance_future)
        self.auth.require_write("refresh attendance")
        self._attendance_future = asyncio.ensure_future(
            self._run_stage(SyncStage.ATTENDANCE, self._attendance_stage)
        )
        return await asyncio.shield(self._attendance_future)

    async def _guarded(self, stages: List[Any]) -> SyncResult:
        if self._syncing:
            logger.info("Sync already in progress")
            return SyncResult(in_progress=True, skipped_reason="sync in progress")
        self.auth.require_write("sync data")

        self._syncing = True
        self._task = asyncio.current_task()
        outcome = SyncResult()
        try:
            for stage, fn in stages:
                outcome.stages.append(await self._run_stage(stage, fn))
            outcome.success = True
            self.store.set_metadata(LAST_SYNC_KEY, int(self._clock() * 1000))
        finally:
            self._syncing = False
            self._task = None
        failed = len(outcome.failures)
        logger.info(f"Sync finished: {len(outcome.stages)} stages, {failed} isolated failures")
        return outcome

    async def _run_stage(self, stage: SyncStage, fn: StageFn) -> StageResult:
        result = StageResult(stage=stage, started_at=utc_now())
        self._progress(stage, f"Starting {stage.value} sync")
        try:
            await fn(result)
        except asyncio.CancelledError:
            logger.info(f"{stage.value} sync cancelled")
            self.bus.publish(SyncFailed(stage=stage, error=None, cancelled=True))
            raise
        except Exception as e:
            error = SyncError(
                f"{stage.value} sync failed: {e}",
                failures=result.failures,
                context="refresh your data",
                cause=e,
            )
            logger.error(f"{stage.value} sync aborted: {e}")
            if self.reporter is not None:
                self.reporter.capture_exception(e, {"stage": stage.value, "counts": result.counts})
            self.bus.publish(SyncFailed(stage=stage, error=error))
            raise error from e
        result.finished_at = utc_now()
        self._progress(stage, f"Finished {stage.value} sync", result)
        self.bus.publish(SyncCompleted(stage=stage, summary=result))
        return result

    # === Stage A ===

    async def _dashboard_stage(self, result: StageResult) -> None:
        self._progress(SyncStage.DASHBOARD, "Loading sections", result)
        result.count("sections", self.store.save_sections(await self.client.get_user_roles()))
        sections = self.store.get_sections()
        if not sections:
            logger.warning("No sections returned for this user")

        try:
            self.auth.set_user_info(await self.client.get_user_info())
        except VikingError as e:
            self._record_failure(result, e, scope="user_info")

        self._progress(SyncStage.DASHBOARD, "Loading terms", result)
        terms_by_section = await self.client.get_terms()
        today = self._today()
        for section in sections:
            result.count("terms", self.store.save_terms(section.section_id, terms_by_section.get(section.section_id, [])))
            current = select_current_term(self.store.get_terms(section.section_id), today)
            if current is None:
                logger.debug(f"Section {section.section_id} has no terms")
                continue
            self.store.save_current_active_term(current_term_record(current))

        if self.preload_flexi:
            self._progress(SyncStage.DASHBOARD, "Preloading FlexiRecords", result)
            await self._preload_flexi(result, [s.section_id for s in sections])

    async def _preload_flexi(self, result: StageResult, section_ids: List[int]) -> None:
        fetched: Dict[str, bool] = {}
        for section_id in section_ids:
            try:
                lists = await self.client.get_flexi_records(section_id)
            except VikingError as e:
                self._record_failure(result, e, scope="flexi_lists", section_id=section_id)
                continue
            live = [
                r for r in lists
                if str(r.get("archived", "0")) != "1" and str(r.get("soft_deleted", "0")) != "1"
            ]
            result.count("flexi_lists", self.store.save_flexi_lists(section_id, live))

            term = self.store.get_current_active_term(section_id)
            if term is None:
                continue
            for flexi in self.store.get_flexi_lists(section_id):
                if flexi.name not in FLEXI_PRELOAD_NAMES or flexi.extra_id in fetched:
                    continue
                try:
                    structure = await self.client.get_flexi_structure(flexi.extra_id, section_id, term.term_id)
                except VikingError as e:
                    self._record_failure(result, e, scope="flexi_structure", extra_id=flexi.extra_id)
                    continue
                fetched[flexi.extra_id] = True
                if structure:
                    self.store.save_flexi_structure(flexi.extra_id, structure)
                    result.count("flexi_structures")

    # === Stage B ===

    async def _background_stage(self, result: StageResult) -> None:
        for section in self.store.get_sections():
            section_id = section.section_id
            term = self.store.get_current_active_term(section_id)
            term_id = term.term_id if term else None

            self._progress(SyncStage.BACKGROUND, f"Loading members for {section.name}", result)
            try:
                members = await self.client.get_members_grid(section_id, term_id)
                result.count("members", self.store.save_members([section_id], members))
            except (VikingError, ValueError) as e:
                self._record_failure(result, e, scope="members", section_id=section_id)

            if term_id is None:
                logger.debug(f"Section {section_id} has no current term; no events to load")
                continue
            self._progress(SyncStage.BACKGROUND, f"Loading events for {section.name}", result)
            try:
                events = await self.client.get_events(section_id, term_id)
                events = [{**e, "term_id": term_id} if isinstance(e, dict) else e for e in events]
                result.count("events", self.store.save_events(section_id, events))
            except (VikingError, ValueError) as e:
                self._record_failure(result, e, scope="events", section_id=section_id)

        await self._attendance_stage(result)

    # === Attendance ===

    def displayable_events(self) -> List[Event]:
        today = self._today()
        return [e for e in self.store.get_events() if in_display_window(e, today)]

    async def _attendance_stage(self, result: StageResult) -> None:
        events = self.displayable_events()
        self._progress(result.stage, f"Loading attendance for {len(events)} events", result)
        outcomes = await self.governor.fan_out(
            events, self.sync_event_attendance, batch_size=self.batch_size, pause=self.batch_pause
        )
        for event, outcome in zip(events, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self._record_failure(result, outcome, scope="attendance", event_id=event.event_id)
            else:
                result.count("attendance", outcome)
                result.count("events_synced")

        shared = detect_shared_events(self.store)
        result.count("shared_events", len(shared))

        if self.fetch_shared_attendance:
            self._progress(result.stage, "Loading shared attendance", result)
            for event in events:
                try:
                    result.count("shared_attendance", await self.sync_shared_attendance(event))
                except (VikingError, ValueError) as e:
                    self._record_failure(result, e, scope="shared_attendance", event_id=event.event_id)

    async def sync_event_attendance(self, event: Event) -> int:
        if not event.term_id:
            logger.debug(f"Event {event.event_id} has no term; skipping attendance")
            return 0
        rows = await self.client.get_event_attendance(event.section_id, event.term_id, event.event_id)
        return self.store.save_attendance(event.event_id, rows)

    async def sync_shared_attendance(self, event: Event) -> int:
        """Fetch combined attendance, falling back to the last good response."""
        cache_key = shared_attendance_key(event.event_id, event.section_id, self.store.demo_mode)
        try:
            body = await self.client.get_shared_event_attendance(event.event_id, event.section_id)
            self.store.set_metadata(cache_key, body)
        except VikingError as e:
            if _fatal(e):
                raise
            body = self.store.get_metadata(cache_key)
            if body is None:
                raise
            logger.debug(f"Using cached shared attendance for event {event.event_id}: {e.detail}")

        rows = []
        for row in body.get("combined_attendance") or []:
            if not isinstance(row, dict):
                continue
            section = row.get("sectionid", row.get("section_id"))
            if section is not None and str(section) == str(event.section_id):
                continue
            rows.append({**row, "event_id": event.event_id})
        return self.store.save_shared_attendance(event.event_id, rows)

    # === FlexiRecord data ===

    async def sync_flexi_data(self, extra_id: str, section_id: int, term_id: Optional[str] = None) -> int:
        """Load one FlexiRecord's member rows for a section.

        Uses the section's current term when ``term_id`` is omitted; a
        section without one has nothing to load.
        """
        self.auth.require_write("load FlexiRecord data")
        if term_id is None:
            term = self.store.get_current_active_term(section_id)
            if term is None:
                logger.debug(f"Section {section_id} has no current term; no FlexiRecord data to load")
                return 0
            term_id = term.term_id
        rows = await self.client.get_single_flexi_record(extra_id, section_id, term_id)
        return self.store.save_flexi_data(extra_id, section_id, term_id, rows)
