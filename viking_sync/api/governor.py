"""Serialized upstream request queue.

Every upstream call goes through ``ApiGovernor``. Requests are queued
FIFO within a priority class and dispatched one at a time (or up to
``max_concurrent``) with a minimum spacing between dispatch starts, so a
burst of fetches never trips the upstream rate limiter.

Outcomes:
- 2xx resolves the caller's future with an ``ApiResponse``.
- 429 pauses the whole queue for the retry window and puts the request
  back at the head of its class without spending its retry budget.
  Callers that asked for it (the health probe) get ``RateLimitedError``
  instead of waiting.
- 401/403 are handed to the auth handler and fail with
  ``AuthExpiredError``; later requests are stopped by the auth gate.
- A "blocked" body halts the governor for the session.
- Timeouts, transport errors and 5xx are retried with exponential
  backoff and jitter, then fail with ``NetworkError``.
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    TypeVar,
)

import httpx

from ..errors import (
    AuthExpiredError,
    BlockedError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    UnknownError,
    VikingError,
    classify,
    is_token_expired_message,
)
from ..events import EventBus, RateLimitStatus
from ..observability import ErrorReporter
from .transport import ApiResponse, HttpTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Rate-limit quota thresholds reported by upstream
RATE_LIMIT_WARNING_REMAINING = 20
RATE_LIMIT_CRITICAL_REMAINING = 10
RATE_LIMIT_PAUSE_REMAINING = 1

BLOCKED_SENTINEL = "blocked"


class Priority(IntEnum):
    """Dispatch classes; lower values go first."""

    HEALTH_PROBE = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


@dataclass
class ApiRequest:
    name: str
    path: str
    method: str = "GET"
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    priority: Priority = Priority.NORMAL
    timeout: Optional[float] = None
    requires_auth: bool = True
    max_attempts: Optional[int] = None
    # Fail fast with RateLimitedError instead of waiting out a 429
    surface_rate_limit: bool = False


@dataclass
class _Pending:
    request: ApiRequest
    future: asyncio.Future
    enqueued_at: float
    attempts: int = 0


@dataclass
class GovernorStats:
    total_requests: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0
    rate_limit_hits: int = 0
    auth_failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_requests": self.total_requests,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retries": self.retries,
            "rate_limit_hits": self.rate_limit_hits,
            "auth_failures": self.auth_failures,
        }


AuthGate = Callable[[ApiRequest], Optional[VikingError]]
AuthFailureHandler = Callable[[int, str], None]
StatusListener = Callable[[RateLimitStatus], None]


def _number(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def retry_after_from(response: ApiResponse) -> Optional[float]:
    """Retry hint in seconds from headers or the upstream body."""
    header = _number(response.headers.get("retry-after"))
    if header is not None:
        return header
    data = response.data if isinstance(response.data, dict) else {}
    for key in ("rateLimitInfo", "_rateLimitInfo", "rateLimit"):
        info = data.get(key)
        if isinstance(info, dict):
            value = _number(info.get("retryAfter"))
            if value is not None:
                return value
    return None


class ApiGovernor:
    """Rate-aware request queue in front of ``HttpTransport``."""

    def __init__(
        self,
        transport: HttpTransport,
        *,
        spacing: float = 0.1,
        max_concurrent: int = 1,
        default_timeout: float = 30.0,
        probe_timeout: float = 5.0,
        queue_timeout: float = 300.0,
        retry_base: float = 1.0,
        retry_cap: float = 30.0,
        jitter: float = 0.2,
        max_attempts: int = 3,
        bus: Optional[EventBus] = None,
        reporter: Optional[ErrorReporter] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.transport = transport
        self.spacing = spacing
        self.max_concurrent = max(1, max_concurrent)
        self.default_timeout = default_timeout
        self.probe_timeout = probe_timeout
        self.queue_timeout = queue_timeout
        self.retry_base = retry_base
        self.retry_cap = retry_cap
        self.jitter = jitter
        self.max_attempts = max_attempts
        self.bus = bus
        self.reporter = reporter
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._queues: Dict[Priority, Deque[_Pending]] = {p: deque() for p in Priority}
        self._wakeup = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._worker: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._delayed: Dict[int, _Pending] = {}
        self._in_flight = 0
        self._last_dispatch: Optional[float] = None
        self._paused_until = 0.0
        self._blocked: Optional[str] = None
        self._status_listeners: List[StatusListener] = []
        self._auth_gate: Optional[AuthGate] = None
        self._on_auth_failure: Optional[AuthFailureHandler] = None
        self._on_blocked: Optional[Callable[[str], None]] = None
        self.stats = GovernorStats()

    @classmethod
    def from_settings(cls, settings: Any, transport: HttpTransport, **kwargs: Any) -> "ApiGovernor":
        return cls(
            transport,
            spacing=settings.request_spacing_ms / 1000.0,
            max_concurrent=settings.max_concurrent_requests,
            default_timeout=settings.request_timeout,
            probe_timeout=settings.probe_timeout,
            queue_timeout=settings.queue_timeout,
            **kwargs,
        )

    # === Wiring ===

    def set_auth_gate(self, gate: Optional[AuthGate]) -> None:
        """Install a check run before each authenticated dispatch."""
        self._auth_gate = gate

    def set_auth_failure_handler(self, handler: Optional[AuthFailureHandler]) -> None:
        self._on_auth_failure = handler

    def set_blocked_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        self._on_blocked = handler

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    # === Status ===

    @property
    def queue_length(self) -> int:
        return sum(len(q) for q in self._queues.values()) + len(self._delayed)

    @property
    def is_processing(self) -> bool:
        return self._in_flight > 0 or any(self._queues.values())

    @property
    def rate_limit_remaining(self) -> float:
        return max(0.0, self._paused_until - self._clock())

    @property
    def is_rate_limited(self) -> bool:
        return self.rate_limit_remaining > 0

    @property
    def is_blocked(self) -> bool:
        return self._blocked is not None

    def status(self) -> RateLimitStatus:
        return RateLimitStatus(
            queue_length=self.queue_length,
            processing=self.is_processing,
            rate_limited=self.is_rate_limited,
            rate_limit_remaining=self.rate_limit_remaining,
        )

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = self.stats.to_dict()
        stats.update(
            {
                "queue_length": self.queue_length,
                "processing": self.is_processing,
                "rate_limited": self.is_rate_limited,
                "rate_limit_remaining": self.rate_limit_remaining,
                "blocked": self.is_blocked,
            }
        )
        return stats

    def _publish_status(self) -> None:
        status = self.status()
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Governor status listener failed")
        if self.bus is not None:
            self.bus.publish(status)

    # === Blocking ===

    def mark_blocked(self, reason: str) -> None:
        """Stop all upstream traffic for this session."""
        if self._blocked is None:
            logger.error(f"CRITICAL: upstream API blocked: {reason}")
            if self.reporter is not None:
                self.reporter.capture_message("Upstream API blocked", "error", {"reason": reason})
        self._blocked = reason
        self.clear(f"blocked: {reason}", error_cls=BlockedError)
        if self._on_blocked is not None:
            self._on_blocked(reason)

    # === Enqueue ===

    def enqueue(self, request: ApiRequest) -> asyncio.Future:
        """Queue a request and return the future of its ``ApiResponse``."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self.stats.total_requests += 1
        if self._blocked is not None:
            self.stats.failed += 1
            future.set_exception(BlockedError(f"Upstream blocked: {self._blocked}", context=request.name))
            return future
        self._queues[Priority(request.priority)].append(
            _Pending(request=request, future=future, enqueued_at=self._clock())
        )
        self._ensure_worker()
        self._wakeup.set()
        self._publish_status()
        return future

    async def request(self, request: ApiRequest) -> ApiResponse:
        return await self.enqueue(request)

    async def call(self, name: str, path: str, **kwargs: Any) -> ApiResponse:
        """Shorthand for ``request(ApiRequest(name, path, **kwargs))``."""
        return await self.request(ApiRequest(name=name, path=path, **kwargs))

    def clear(self, reason: str = "queue cleared", error_cls: type = NetworkError) -> int:
        """Reject every waiting request. Returns how many were rejected."""
        rejected = 0
        for queue in self._queues.values():
            while queue:
                rejected += self._fail(queue.popleft(), error_cls(f"Request cancelled: {reason}"))
        for item in list(self._delayed.values()):
            rejected += self._fail(item, error_cls(f"Request cancelled: {reason}"))
        self._delayed.clear()
        if rejected:
            logger.info(f"Cleared {rejected} queued requests ({reason})")
            self._publish_status()
        return rejected

    async def close(self) -> None:
        self.clear("governor closed")
        tasks = list(self._tasks)
        if self._worker is not None:
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._tasks.clear()

    # === Worker ===

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def _pop(self) -> Optional[_Pending]:
        for priority in Priority:
            queue = self._queues[priority]
            if queue:
                return queue.popleft()
        return None

    async def _run(self) -> None:
        while True:
            if not any(self._queues.values()):
                self._wakeup.clear()
                self._publish_status()
                await self._wakeup.wait()
                continue

            await self._semaphore.acquire()
            try:
                while True:
                    now = self._clock()
                    delay = self._paused_until - now
                    if self._last_dispatch is not None:
                        delay = max(delay, self._last_dispatch + self.spacing - now)
                    if delay <= 0:
                        break
                    await self._sleep(delay)
                item = self._pop()
            except BaseException:
                self._semaphore.release()
                raise

            if item is None or item.future.done():
                self._semaphore.release()
                continue
            if self._clock() - item.enqueued_at > self.queue_timeout:
                self._fail(
                    item,
                    RateLimitedError(
                        f"{item.request.name} queued longer than {self.queue_timeout:.0f}s",
                        context=item.request.name,
                    ),
                )
                self._semaphore.release()
                continue

            self._last_dispatch = self._clock()
            self._in_flight += 1
            self._track(self._dispatch(item))

    def _track(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch(self, item: _Pending) -> None:
        try:
            await self._attempt(item)
        except Exception as e:
            self._fail(item, classify(e, context=item.request.name))
        finally:
            self._in_flight -= 1
            self._semaphore.release()
            self._wakeup.set()
            self._publish_status()

    async def _attempt(self, item: _Pending) -> None:
        request = item.request
        if self._blocked is not None:
            self._fail(item, BlockedError(f"Upstream blocked: {self._blocked}", context=request.name))
            return
        if request.requires_auth and self._auth_gate is not None:
            refusal = self._auth_gate(request)
            if refusal is not None:
                self._fail(item, refusal)
                return

        item.attempts += 1
        timeout = request.timeout
        if timeout is None:
            timeout = self.probe_timeout if request.priority == Priority.HEALTH_PROBE else self.default_timeout
        try:
            response = await asyncio.wait_for(
                self.transport.send(
                    request.method,
                    request.path,
                    params=request.params,
                    json=request.json,
                    timeout=timeout,
                    requires_auth=request.requires_auth,
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            self._retry_or_fail(
                item, NetworkError(f"{request.name} timed out after {timeout}s", context=request.name, cause=e)
            )
            return
        except httpx.TransportError as e:
            self._retry_or_fail(
                item, NetworkError(f"{request.name} failed: {e}", context=request.name, cause=e)
            )
            return

        self._handle_response(item, response)

    def _handle_response(self, item: _Pending, response: ApiResponse) -> None:
        request = item.request
        self._check_quota(request, response)

        if response.status == 429:
            self._on_rate_limited(item, response)
            return

        message = response.error_message() if not response.ok else ""
        if not response.ok and BLOCKED_SENTINEL in message.lower():
            self._fail(item, BlockedError(message, context=request.name, status=response.status))
            self.mark_blocked(message)
            return

        if response.status in (401, 403) or (not response.ok and is_token_expired_message(message)):
            self.stats.auth_failures += 1
            logger.warning(f"{request.name}: authentication failed ({response.status})")
            if self._on_auth_failure is not None:
                self._on_auth_failure(response.status, message)
            self._fail(
                item, AuthExpiredError(message or "Authentication failed", context=request.name, status=response.status)
            )
            return

        if response.status >= 500:
            self._retry_or_fail(
                item, NetworkError(f"{request.name}: {message}", context=request.name, status=response.status)
            )
            return
        if response.status == 404:
            self._fail(item, NotFoundError(f"{request.name}: {message}", context=request.name, status=404))
            return
        if not response.ok:
            self._fail(item, UnknownError(f"{request.name}: {message}", context=request.name, status=response.status))
            return

        self.stats.succeeded += 1
        if not item.future.done():
            item.future.set_result(response)

    # === Rate limiting ===

    def _pause(self, seconds: float) -> float:
        pause = min(max(seconds, self.retry_base), self.retry_cap)
        self._paused_until = max(self._paused_until, self._clock() + pause)
        return pause

    def _on_rate_limited(self, item: _Pending, response: ApiResponse) -> None:
        request = item.request
        self.stats.rate_limit_hits += 1
        # 429s do not spend the retry budget
        item.attempts -= 1
        retry_after = retry_after_from(response)
        pause = self._pause(retry_after if retry_after is not None else self.retry_base)
        logger.warning(f"Rate limited on {request.name}; pausing queue for {pause:.1f}s")
        if request.surface_rate_limit:
            self._fail(
                item,
                RateLimitedError(
                    f"{request.name} rate limited", retry_after=pause, context=request.name, status=429
                ),
            )
        else:
            self._queues[Priority(request.priority)].appendleft(item)
        self._publish_status()

    def _check_quota(self, request: ApiRequest, response: ApiResponse) -> None:
        """Log quota warnings and pause pre-emptively when the quota is spent."""
        remaining: Optional[float] = _number(response.headers.get("x-ratelimit-remaining"))
        limit: Optional[float] = _number(response.headers.get("x-ratelimit-limit"))
        data = response.data if isinstance(response.data, dict) else {}
        info = data.get("_rateLimitInfo")
        if isinstance(info, dict):
            osm = info.get("osm") if isinstance(info.get("osm"), dict) else info
            remaining = _number(osm.get("remaining")) if osm.get("remaining") is not None else remaining
            limit = _number(osm.get("limit")) if osm.get("limit") is not None else limit
        if remaining is None or (limit is not None and limit <= 0):
            return

        if remaining < RATE_LIMIT_CRITICAL_REMAINING:
            logger.error(f"CRITICAL: {remaining:.0f} upstream requests remaining after {request.name}")
            if self.reporter is not None:
                self.reporter.capture_message(
                    "Low upstream requests remaining", "error", {"api": request.name, "remaining": remaining}
                )
        elif remaining < RATE_LIMIT_WARNING_REMAINING:
            logger.warning(f"Upstream rate limit warning: {remaining:.0f} remaining after {request.name}")

        if remaining <= RATE_LIMIT_PAUSE_REMAINING and response.status != 429:
            hint = retry_after_from(response)
            pause = self._pause(hint if hint is not None else self.retry_base)
            logger.warning(f"Upstream quota nearly spent; pausing queue for {pause:.1f}s")

    # === Retry ===

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        base = min(self.retry_cap, self.retry_base * (2 ** max(0, attempt - 1)))
        return base * (1 + self.jitter * (2 * self._rng() - 1))

    def _retry_or_fail(self, item: _Pending, error: VikingError) -> None:
        max_attempts = item.request.max_attempts or self.max_attempts
        if item.attempts >= max_attempts:
            logger.warning(f"{item.request.name} failed after {item.attempts} attempts: {error.detail}")
            if self.reporter is not None:
                self.reporter.capture_message(
                    "Upstream request failed", "warning", {"api": item.request.name, "error": error.detail}
                )
            self._fail(item, error)
            return
        delay = self.backoff_delay(item.attempts)
        self.stats.retries += 1
        logger.info(
            f"{item.request.name} attempt {item.attempts}/{max_attempts} failed, retrying in {delay:.1f}s: {error.detail}"
        )
        self._delayed[id(item)] = item
        self._track(self._requeue_later(item, delay))

    async def _requeue_later(self, item: _Pending, delay: float) -> None:
        await self._sleep(delay)
        if self._delayed.pop(id(item), None) is None or item.future.done():
            return
        self._queues[Priority(item.request.priority)].append(item)
        self._wakeup.set()

    def _fail(self, item: _Pending, error: BaseException) -> int:
        if item.future.done():
            return 0
        self.stats.failed += 1
        item.future.set_exception(error)
        return 1

    # === Helpers ===

    async def probe(self, path: str = "/health") -> Dict[str, Any]:
        """Health probe on the reserved priority class."""
        started = self._clock()
        request = ApiRequest(
            name="health",
            path=path,
            priority=Priority.HEALTH_PROBE,
            timeout=self.probe_timeout,
            requires_auth=False,
            max_attempts=1,
            surface_rate_limit=True,
        )
        result: Dict[str, Any] = {"healthy": False, "latency_ms": None, "error": None, "rate_limited": False}
        try:
            await self.request(request)
            result["healthy"] = True
        except RateLimitedError as e:
            result.update({"healthy": None, "rate_limited": True, "error": e.detail})
        except VikingError as e:
            result["error"] = e.detail
        result["latency_ms"] = round((self._clock() - started) * 1000, 1)
        return result

    async def fan_out(
        self,
        items: Iterable[T],
        fn: Callable[[T], Awaitable[Any]],
        *,
        batch_size: int = 5,
        pause: float = 0.5,
    ) -> List[Any]:
        """Run ``fn`` over ``items`` in batches, pausing between batches.

        Results keep input order; a failed item yields its exception.
        """
        items = list(items)
        results: List[Any] = []
        size = max(1, batch_size)
        for start in range(0, len(items), size):
            if start and pause > 0:
                await self._sleep(pause)
            batch = items[start : start + size]
            results.extend(await asyncio.gather(*(fn(i) for i in batch), return_exceptions=True))
        return results
