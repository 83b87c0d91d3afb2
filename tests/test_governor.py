"""Request governor: spacing, retry, rate limiting and auth handling."""

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from viking_sync.api import ApiRequest, Priority
from viking_sync.api.governor import retry_after_from
from viking_sync.api.transport import ApiResponse
from viking_sync.connectivity import ConnectivityMonitor
from viking_sync.errors import (
    AuthExpiredError,
    BlockedError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    UnknownError,
)
from viking_sync.events import ConnectivityChanged, RateLimitStatus

EPSILON = 1e-9


def _ok(body=None):
    return (200, body if body is not None else {"ok": True})


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    @pytest.mark.asyncio
    async def test_success_returns_response(self, make_governor, mock_api):
        mock_api.route("/get-terms", _ok({"1": []}))
        governor = make_governor()

        response = await governor.call("getTerms", "/get-terms")

        assert response.status == 200
        assert response.data == {"1": []}
        assert mock_api.calls[0].headers["authorization"] == "Bearer token-abc"
        await governor.close()

    @pytest.mark.asyncio
    async def test_requests_are_spaced(self, make_governor, mock_api):
        mock_api.route("/get-terms", _ok())
        governor = make_governor(spacing=0.1)

        await asyncio.gather(*(governor.call(f"req{i}", "/get-terms") for i in range(5)))

        gaps = [b - a for a, b in zip(mock_api.call_times, mock_api.call_times[1:])]
        assert len(gaps) == 4
        assert all(gap >= 0.1 - EPSILON for gap in gaps)
        await governor.close()

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, make_governor, mock_api):
        mock_api.route("/a", _ok())
        governor = make_governor()

        futures = [governor.enqueue(ApiRequest(name=f"r{i}", path="/a", params={"n": i})) for i in range(3)]
        await asyncio.gather(*futures)

        assert [c.url.params["n"] for c in mock_api.calls] == ["0", "1", "2"]
        await governor.close()

    @pytest.mark.asyncio
    async def test_higher_priority_dispatched_first(self, make_governor, mock_api):
        mock_api.route("/a", _ok())
        governor = make_governor()

        low = governor.enqueue(ApiRequest(name="low", path="/a", params={"n": "low"}, priority=Priority.LOW))
        high = governor.enqueue(ApiRequest(name="high", path="/a", params={"n": "high"}, priority=Priority.HIGH))
        await asyncio.gather(low, high)

        assert [c.url.params["n"] for c in mock_api.calls] == ["high", "low"]
        await governor.close()

    @pytest.mark.asyncio
    async def test_unauthenticated_requests_carry_no_token(self, make_governor, mock_api):
        mock_api.route("/health", _ok())
        governor = make_governor()

        await governor.call("health", "/health", requires_auth=False)

        assert "authorization" not in mock_api.calls[0].headers
        await governor.close()

    @pytest.mark.asyncio
    async def test_status_listener_notified(self, make_governor, mock_api, published):
        mock_api.route("/a", _ok())
        governor = make_governor()
        seen = []
        governor.add_status_listener(seen.append)

        await governor.call("a", "/a")

        assert seen
        assert all(isinstance(s, RateLimitStatus) for s in seen)
        assert any(isinstance(e, RateLimitStatus) for e in published)
        await governor.close()


# =============================================================================
# Failures and retry
# =============================================================================


class TestRetry:
    @pytest.mark.asyncio
    async def test_server_error_retried_with_backoff(self, make_governor, mock_api, clock):
        mock_api.route("/a", [(503, {"error": "busy"}), _ok()])
        governor = make_governor()

        response = await governor.call("a", "/a")

        assert response.status == 200
        assert len(mock_api.calls) == 2
        assert 1.0 in clock.sleeps
        assert governor.stats.retries == 1
        await governor.close()

    @pytest.mark.asyncio
    async def test_retries_exhausted_raise_network_error(self, make_governor, mock_api, clock):
        mock_api.route("/a", (500, {"error": "boom"}))
        governor = make_governor()

        with pytest.raises(NetworkError):
            await governor.call("a", "/a")

        assert len(mock_api.calls) == 3
        assert [s for s in clock.sleeps if s >= 1.0][:2] == [1.0, 2.0]
        await governor.close()

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, make_governor, mock_api):
        attempts = []

        def flaky(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"ok": True})

        mock_api.route("/a", flaky)
        governor = make_governor()

        response = await governor.call("a", "/a")

        assert response.data == {"ok": True}
        assert len(attempts) == 2
        await governor.close()

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, make_governor, mock_api):
        governor = make_governor()

        with pytest.raises(NotFoundError):
            await governor.call("missing", "/missing")

        assert len(mock_api.calls) == 1
        await governor.close()

    @pytest.mark.asyncio
    async def test_other_client_errors_not_retried(self, make_governor, mock_api):
        mock_api.route("/a", (400, {"error": "bad request"}))
        governor = make_governor()

        with pytest.raises(UnknownError) as exc_info:
            await governor.call("a", "/a")

        assert exc_info.value.status == 400
        assert len(mock_api.calls) == 1
        await governor.close()

    def test_backoff_delay_bounds(self, make_governor):
        governor = make_governor(rng=lambda: 1.0)

        assert governor.backoff_delay(1) == pytest.approx(1.2)
        assert governor.backoff_delay(3) == pytest.approx(4.8)
        assert governor.backoff_delay(10) == pytest.approx(36.0)

        governor = make_governor(rng=lambda: 0.0)
        assert governor.backoff_delay(1) == pytest.approx(0.8)


# =============================================================================
# Rate limiting
# =============================================================================


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_429_pauses_and_requeues_without_spending_retries(self, make_governor, mock_api):
        mock_api.route(
            "/a",
            [httpx.Response(429, json={"error": "slow down"}, headers={"Retry-After": "2"}), _ok()],
        )
        governor = make_governor()

        response = await governor.call("a", "/a", max_attempts=1)

        assert response.status == 200
        assert governor.stats.rate_limit_hits == 1
        assert governor.stats.retries == 0
        assert mock_api.call_times[1] - mock_api.call_times[0] >= 2 - EPSILON
        await governor.close()

    @pytest.mark.asyncio
    async def test_429_keeps_queue_order(self, make_governor, mock_api):
        responses = [httpx.Response(429, headers={"Retry-After": "1"}), _ok()]

        def first_limited(request):
            if request.url.params["n"] == "0" and responses:
                return responses.pop(0)
            return httpx.Response(200, json={})

        mock_api.route("/a", first_limited)
        governor = make_governor()

        await asyncio.gather(
            *(governor.enqueue(ApiRequest(name="a", path="/a", params={"n": i})) for i in range(3))
        )

        assert [c.url.params["n"] for c in mock_api.calls] == ["0", "0", "1", "2"]
        await governor.close()

    @pytest.mark.asyncio
    async def test_surfaced_rate_limit(self, make_governor, mock_api):
        mock_api.route("/a", (429, {"rateLimitInfo": {"retryAfter": 5}}))
        governor = make_governor()

        with pytest.raises(RateLimitedError) as exc_info:
            await governor.call("a", "/a", surface_rate_limit=True)

        assert exc_info.value.retry_after == 5
        assert governor.is_rate_limited
        await governor.close()

    @pytest.mark.asyncio
    async def test_quota_exhaustion_pauses_queue(self, make_governor, mock_api):
        mock_api.route(
            "/a",
            httpx.Response(200, json={"ok": True}, headers={"X-RateLimit-Remaining": "1", "X-RateLimit-Limit": "1000"}),
        )
        reporter = MagicMock()
        governor = make_governor(reporter=reporter)

        await governor.call("a", "/a")

        assert governor.is_rate_limited
        reporter.capture_message.assert_called_once()
        await governor.close()

    def test_retry_after_sources(self):
        assert retry_after_from(ApiResponse(status=429, headers={"retry-after": "7"})) == 7
        assert retry_after_from(ApiResponse(status=429, data={"_rateLimitInfo": {"retryAfter": "3"}})) == 3
        assert retry_after_from(ApiResponse(status=429)) is None

    @pytest.mark.asyncio
    async def test_queue_timeout_fails_waiting_requests(self, make_governor, mock_api, clock):
        mock_api.route("/a", [httpx.Response(429, headers={"Retry-After": "30"}), _ok()])
        governor = make_governor(queue_timeout=10, retry_cap=60)

        first = governor.enqueue(ApiRequest(name="first", path="/a"))
        second = governor.enqueue(ApiRequest(name="second", path="/a"))

        for future in (first, second):
            with pytest.raises(RateLimitedError):
                await future
        assert len(mock_api.calls) == 1
        await governor.close()


# =============================================================================
# Auth and blocking
# =============================================================================


class TestAuthAndBlocking:
    @pytest.mark.asyncio
    async def test_401_calls_handler_and_raises(self, make_governor, mock_api):
        mock_api.route("/a", (401, {"error": "Unauthorized"}))
        governor = make_governor()
        handler = MagicMock()
        governor.set_auth_failure_handler(handler)

        with pytest.raises(AuthExpiredError):
            await governor.call("a", "/a")

        handler.assert_called_once_with(401, "Unauthorized")
        assert len(mock_api.calls) == 1
        assert governor.stats.auth_failures == 1
        await governor.close()

    @pytest.mark.asyncio
    async def test_token_expired_message_is_auth_failure(self, make_governor, mock_api):
        mock_api.route("/a", (400, {"error": "Token has expired"}))
        governor = make_governor()

        with pytest.raises(AuthExpiredError):
            await governor.call("a", "/a")
        await governor.close()

    @pytest.mark.asyncio
    async def test_auth_gate_refuses_before_dispatch(self, make_governor, mock_api):
        governor = make_governor()
        governor.set_auth_gate(lambda request: AuthExpiredError("signed out"))

        with pytest.raises(AuthExpiredError):
            await governor.call("a", "/a")

        assert mock_api.calls == []
        await governor.close()

    @pytest.mark.asyncio
    async def test_auth_gate_skipped_for_unauthenticated_requests(self, make_governor, mock_api):
        mock_api.route("/health", _ok())
        governor = make_governor()
        governor.set_auth_gate(lambda request: AuthExpiredError("signed out"))

        response = await governor.call("health", "/health", requires_auth=False)

        assert response.ok
        await governor.close()

    @pytest.mark.asyncio
    async def test_blocked_halts_governor(self, make_governor, mock_api):
        mock_api.route("/a", (403, {"error": "Your application has been blocked"}))
        governor = make_governor()
        on_blocked = MagicMock()
        governor.set_blocked_handler(on_blocked)

        with pytest.raises(BlockedError):
            await governor.call("a", "/a")

        assert governor.is_blocked
        on_blocked.assert_called_once()
        with pytest.raises(BlockedError):
            await governor.call("b", "/a")
        assert len(mock_api.calls) == 1
        await governor.close()

    @pytest.mark.asyncio
    async def test_clear_rejects_waiting_requests(self, make_governor, mock_api):
        mock_api.route("/a", _ok())
        governor = make_governor()

        futures = [governor.enqueue(ApiRequest(name=f"r{i}", path="/a")) for i in range(3)]
        rejected = governor.clear("network lost")

        assert rejected == 3
        for future in futures:
            with pytest.raises(NetworkError, match="network lost"):
                await future
        await governor.close()


# =============================================================================
# Probe and fan-out
# =============================================================================


class TestProbeAndFanOut:
    @pytest.mark.asyncio
    async def test_probe_healthy(self, make_governor, mock_api):
        mock_api.route("/health", _ok({"status": "ok"}))
        governor = make_governor()

        result = await governor.probe()

        assert result["healthy"] is True
        assert result["rate_limited"] is False
        await governor.close()

    @pytest.mark.asyncio
    async def test_probe_rate_limited(self, make_governor, mock_api):
        mock_api.route("/health", (429, {}))
        governor = make_governor()

        result = await governor.probe()

        assert result["healthy"] is None
        assert result["rate_limited"] is True
        await governor.close()

    @pytest.mark.asyncio
    async def test_probe_failure_not_retried(self, make_governor, mock_api):
        mock_api.route("/health", (503, {"error": "down"}))
        governor = make_governor()

        result = await governor.probe()

        assert result["healthy"] is False
        assert result["error"]
        assert len(mock_api.calls) == 1
        await governor.close()

    @pytest.mark.asyncio
    async def test_fan_out_batches_and_keeps_order(self, make_governor, clock):
        governor = make_governor()
        started = []

        async def work(n):
            started.append((n, clock()))
            if n == 3:
                raise ValueError("bad item")
            return n * 10

        results = await governor.fan_out(range(7), work, batch_size=3, pause=0.5)

        assert results[:3] == [0, 10, 20]
        assert isinstance(results[3], ValueError)
        assert results[4:] == [40, 50, 60]
        assert clock.sleeps == [0.5, 0.5]
        assert started[3][1] - started[2][1] == pytest.approx(0.5)

    def test_get_stats(self, make_governor):
        stats = make_governor().get_stats()

        assert stats["total_requests"] == 0
        assert stats["queue_length"] == 0
        assert stats["blocked"] is False


# =============================================================================
# Connectivity changes
# =============================================================================


class Link:
    """Upstream that refuses connections while down."""

    def __init__(self):
        self.up = True
        self.refused = 0

    def __call__(self, request):
        if not self.up:
            self.refused += 1
            raise httpx.ConnectError("network unreachable", request=request)
        return httpx.Response(200, json={"ok": True})


class TestConnectivityFlap:
    @pytest.mark.asyncio
    async def test_up_down_up_loses_no_request(self, make_governor, mock_api, bus):
        link = Link()
        mock_api.route("/a", link)
        mock_api.route("/health", link)
        governor = make_governor()
        monitor = ConnectivityMonitor(governor.probe, bus)
        reachable = []
        bus.subscribe(ConnectivityChanged, lambda e: reachable.append(e.api_reachable))

        futures = [governor.enqueue(ApiRequest(name=f"up{i}", path="/a")) for i in range(3)]
        assert (await monitor.check())["healthy"] is True

        link.up = False
        futures += [governor.enqueue(ApiRequest(name=f"down{i}", path="/a")) for i in range(3)]
        assert (await monitor.check())["healthy"] is False

        link.up = True
        assert (await monitor.check())["healthy"] is True
        futures += [governor.enqueue(ApiRequest(name=f"back{i}", path="/a")) for i in range(2)]

        outcomes = await asyncio.wait_for(asyncio.gather(*futures, return_exceptions=True), timeout=5)

        assert len(outcomes) == 8
        for outcome in outcomes:
            if isinstance(outcome, ApiResponse):
                assert outcome.status == 200
            else:
                assert isinstance(outcome, NetworkError)
        assert all(isinstance(o, ApiResponse) for o in outcomes[-2:])
        assert link.refused > 0
        assert reachable == [True, False, True]
        assert governor.queue_length == 0
        await governor.close()
