"""Rate limiter tests: exact counting, window reset and fail-closed behavior."""
import asyncio
from unittest.mock import AsyncMock, patch

from chatcore.config import Settings
from chatcore.service.auth import AuthContext
from chatcore.service.rate_limit import (
    CHAT_SCOPE,
    RateLimitDecision,
    RateLimiter,
    RateLimitPolicy,
    tool_scope,
)
from chatcore.storage.memory import MemoryCache


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCounting:
    async def test_allows_up_to_limit_then_denies(self):
        limiter = RateLimiter(MemoryCache(), clock=_Clock())

        decisions = [await limiter.check("k", 3, 60) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
        assert decisions[3].reason == "limit_exceeded"

    async def test_concurrent_requests_never_exceed_limit(self):
        """N concurrent checks against limit L admit exactly min(N, L)."""
        limiter = RateLimiter(MemoryCache(), clock=_Clock())

        decisions = await asyncio.gather(*(limiter.check("burst", 25, 60) for _ in range(100)))

        assert sum(1 for d in decisions if d.allowed) == 25

    async def test_window_resets(self):
        clock = _Clock()
        limiter = RateLimiter(MemoryCache(), clock=clock)
        assert (await limiter.check("k", 1, 60)).allowed
        assert not (await limiter.check("k", 1, 60)).allowed

        clock.now += 61
        assert (await limiter.check("k", 1, 60)).allowed

    async def test_reset_seconds_counts_down(self):
        clock = _Clock()
        limiter = RateLimiter(MemoryCache(), clock=clock)
        first = await limiter.check("k", 5, 60)
        clock.now += 20
        second = await limiter.check("k", 5, 60)

        assert first.reset_seconds == 60
        assert second.reset_seconds == 40

    async def test_scopes_are_independent(self):
        limiter = RateLimiter(MemoryCache(), clock=_Clock())
        policy = RateLimitPolicy(1, 60)

        chat = await limiter.check_policy(tenant_id="t", user_id="u", scope=CHAT_SCOPE, policy=policy)
        tool = await limiter.check_policy(
            tenant_id="t", user_id="u", scope=tool_scope("run_code"), policy=policy
        )
        other_user = await limiter.check_policy(tenant_id="t", user_id="v", scope=CHAT_SCOPE, policy=policy)
        other_tenant = await limiter.check_policy(tenant_id="x", user_id="u", scope=CHAT_SCOPE, policy=policy)

        assert all(d.allowed for d in (chat, tool, other_user, other_tenant))
        again = await limiter.check_policy(tenant_id="t", user_id="u", scope=CHAT_SCOPE, policy=policy)
        assert not again.allowed

    async def test_closed_windows_are_forgotten(self):
        clock = _Clock()
        cache = MemoryCache(sweep_every=1)
        limiter = RateLimiter(cache, clock=clock)
        for n in range(50):
            await limiter.check(f"user-{n}", 5, 60)
        assert len(cache._windows) == 50

        clock.now += 61
        await limiter.check("late", 5, 60)

        assert list(cache._windows) == ["late"]

    async def test_sweep_keeps_open_windows(self):
        clock = _Clock()
        cache = MemoryCache(sweep_every=1)
        limiter = RateLimiter(cache, clock=clock)
        await limiter.check("short", 1, 10)
        await limiter.check("long", 1, 3600)

        clock.now += 11
        await limiter.check("other", 1, 60)

        assert set(cache._windows) == {"long", "other"}
        assert not (await limiter.check("long", 1, 3600)).allowed


class TestFailClosed:
    async def test_backend_error_denies(self):
        backend = AsyncMock()
        backend.hit_window = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = RateLimiter(backend)

        with patch("chatcore.service.rate_limit.logger") as mock_logger:
            decision = await limiter.check("k", 10, 60)

        assert not decision.allowed
        assert decision.reason == "backend_unavailable"
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "rate_limit_backend_unavailable"

    async def test_backend_timeout_denies(self):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(10)

        backend = AsyncMock()
        backend.hit_window = _hang
        limiter = RateLimiter(backend, timeout_seconds=0.01)

        decision = await limiter.check("k", 10, 60)

        assert not decision.allowed
        assert decision.reason == "backend_unavailable"

    async def test_malformed_reply_denies(self):
        backend = AsyncMock()
        backend.hit_window = AsyncMock(return_value=None)
        limiter = RateLimiter(backend)

        decision = await limiter.check("k", 10, 60)

        assert not decision.allowed

    async def test_invalid_policy_denies_without_touching_backend(self):
        backend = AsyncMock()
        limiter = RateLimiter(backend)

        for limit, window in ((0, 60), (-1, 60), (10, 0), (10, -5)):
            decision = await limiter.check("k", limit, window)
            assert not decision.allowed
            assert decision.reason == "invalid_policy"
        backend.hit_window.assert_not_called()


class TestDecision:
    def test_allowed_headers(self):
        headers = RateLimitDecision(True, 10, 7, 30).headers()

        assert headers == {
            "X-RateLimit-Limit": "10",
            "X-RateLimit-Remaining": "7",
            "X-RateLimit-Reset": "30",
        }

    def test_denied_headers_include_retry_after(self):
        headers = RateLimitDecision(False, 10, 0, 0, "limit_exceeded").headers()

        assert headers["Retry-After"] == "1"
        assert headers["X-RateLimit-Remaining"] == "0"

    def test_policy_scaling(self):
        policy = RateLimitPolicy(60, 3600)

        assert policy.scaled(2.0) == RateLimitPolicy(120, 3600)
        assert policy.scaled(0.001).limit == 1

    def test_plan_multipliers(self):
        settings = Settings(test_mode=True)

        assert settings.rate_limit_multiplier("free") == 1.0
        assert settings.rate_limit_multiplier("paid") == 2.0
        assert settings.rate_limit_multiplier("ENTERPRISE") == 5.0
        assert settings.rate_limit_multiplier(None) == 1.0

    def test_chat_policy_uses_plan(self):
        from chatcore.service.runtime import get_runtime

        orchestrator = get_runtime().orchestrator
        base = orchestrator.chat_policy(AuthContext(user_id="u", role="user", tenant_id="t"))
        paid = orchestrator.chat_policy(AuthContext(user_id="u", role="user", tenant_id="t", plan_tier="paid"))

        assert paid.limit == base.limit * 2
