"""Network and upstream reachability tracking.

``is_online`` follows platform network events; ``api_reachable`` follows
health probes sent through the governor. Probes run on an
exponential-backoff cadence: 30 s, growing by 1.5x per failure up to
5 minutes, back to 30 s on success. Rate-limited probes say nothing
about reachability and leave both the state and the cadence untouched.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from .events import ConnectivityChanged, EventBus

logger = logging.getLogger(__name__)

INITIAL_INTERVAL = 30.0
BACKOFF_FACTOR = 1.5
MAX_INTERVAL = 300.0
HISTORY_LIMIT = 100

Probe = Callable[[], Awaitable[Dict[str, Any]]]


class ConnectivityMonitor:
    def __init__(
        self,
        probe: Probe,
        bus: EventBus,
        *,
        is_online: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self._probe = probe
        self.bus = bus
        self._clock = clock
        self.is_online = is_online
        self.api_reachable: Optional[bool] = None
        self.interval = INITIAL_INTERVAL
        self.history: Deque[Dict[str, Any]] = deque(maxlen=HISTORY_LIMIT)
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._checking: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.is_online and bool(self.api_reachable)

    def status(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "api_reachable": self.api_reachable,
            "next_check_in": self.interval,
            "last_check": self.history[-1] if self.history else None,
        }

    def _publish(self, was_online: bool, was_reachable: Optional[bool]) -> None:
        if was_online == self.is_online and was_reachable == self.api_reachable:
            return
        logger.info(
            f"Connectivity changed: online={self.is_online} api_reachable={self.api_reachable}"
        )
        self.bus.publish(
            ConnectivityChanged(
                is_online=self.is_online,
                api_reachable=self.api_reachable,
                previous_api_reachable=was_reachable,
            )
        )

    def set_network_status(self, is_online: bool) -> None:
        """Feed a platform network event."""
        was_online, was_reachable = self.is_online, self.api_reachable
        self.is_online = is_online
        if not is_online:
            self.api_reachable = False
        self._publish(was_online, was_reachable)
        if is_online and not was_online:
            # Probe straight away rather than waiting out the backoff
            self.interval = INITIAL_INTERVAL
            self._wake.set()

    def apply_probe_result(self, result: Dict[str, Any]) -> None:
        """Update reachability and cadence from one probe result."""
        entry = {**result, "timestamp": self._clock()}
        self.history.append(entry)
        if result.get("rate_limited"):
            logger.debug("Health probe rate limited; connectivity unchanged")
            return

        was_online, was_reachable = self.is_online, self.api_reachable
        if result.get("healthy"):
            self.api_reachable = True
            self.interval = INITIAL_INTERVAL
        else:
            self.api_reachable = False
            self.interval = min(self.interval * BACKOFF_FACTOR, MAX_INTERVAL)
            logger.debug(f"Health probe failed ({result.get('error')}); next check in {self.interval:.0f}s")
        self._publish(was_online, was_reachable)

    async def check(self) -> Dict[str, Any]:
        """Run one probe now; concurrent callers share it."""
        if not self.is_online:
            result = {"healthy": False, "latency_ms": None, "error": "offline", "rate_limited": False}
            self.apply_probe_result(result)
            return result
        if self._checking is not None and not self._checking.done():
            return await asyncio.shield(self._checking)
        self._checking = asyncio.ensure_future(self._run_probe())
        return await asyncio.shield(self._checking)

    async def _run_probe(self) -> Dict[str, Any]:
        try:
            result = await self._probe()
        except Exception as e:
            logger.warning(f"Health probe raised: {e}")
            result = {"healthy": False, "latency_ms": None, "error": str(e), "rate_limited": False}
        self.apply_probe_result(result)
        return result

    async def run(self) -> None:
        """Probe forever on the backoff cadence."""
        while True:
            await self.check()
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def wait_for_connection(self, timeout: Optional[float] = None) -> bool:
        """Wait until the API is reachable; False on timeout."""
        if self.is_connected:
            return True
        loop = asyncio.get_running_loop()
        reached: asyncio.Future = loop.create_future()

        def listener(event: ConnectivityChanged) -> None:
            if event.is_online and event.api_reachable and not reached.done():
                reached.set_result(True)

        unsubscribe = self.bus.subscribe(ConnectivityChanged, listener)
        try:
            return await asyncio.wait_for(reached, timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()
