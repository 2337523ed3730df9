"""RedisCache Lua scripts executed by an in-process Redis with a Lua engine."""
import asyncio

import fakeredis
import fakeredis.aioredis

from chatcore.service.rate_limit import RateLimiter
from chatcore.storage.models import SandboxRecord
from chatcore.storage.redis_cache import RedisCache


def _cache():
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisCache("redis://fake:6379/0", client=client)


def _record(handle_id="h1", session_id="s1", now=100.0):
    return SandboxRecord(handle_id, session_id, "u1", "acme", now, now)


class TestRateWindows:
    async def test_concurrent_hits_admit_exactly_the_limit(self):
        cache = _cache()
        limiter = RateLimiter(cache, clock=lambda: 1_000.0)

        decisions = await asyncio.gather(*(limiter.check("acme|chat|u1", 20, 60) for _ in range(50)))

        assert sum(1 for d in decisions if d.allowed) == 20
        assert all(d.reason == "limit_exceeded" for d in decisions if not d.allowed)
        await cache.close()

    async def test_counts_and_reset_seconds(self):
        cache = _cache()

        first = await cache.hit_window("acme|chat|u1", 2, 60, 1_000.0)
        second = await cache.hit_window("acme|chat|u1", 2, 60, 1_020.0)
        third = await cache.hit_window("acme|chat|u1", 2, 60, 1_030.0)

        assert first == (True, 1, 60)
        assert second == (True, 2, 40)
        assert third == (False, 2, 30)
        await cache.close()

    async def test_window_resets_after_expiry(self):
        cache = _cache()
        assert (await cache.hit_window("acme|chat|u1", 1, 60, 1_000.0))[0]
        assert not (await cache.hit_window("acme|chat|u1", 1, 60, 1_010.0))[0]

        assert await cache.hit_window("acme|chat|u1", 1, 60, 1_061.0) == (True, 1, 60)
        await cache.close()

    async def test_window_key_expires(self):
        cache = _cache()
        await cache.hit_window("acme|chat|u1", 5, 60, 1_000.0)

        ttl = await cache.client.ttl(RedisCache._normalize_rate_key("acme|chat|u1"))

        assert 0 < ttl <= 61
        await cache.close()

    async def test_users_are_counted_separately(self):
        cache = _cache()

        assert (await cache.hit_window("acme|chat|u1", 1, 60, 1_000.0))[0]
        assert (await cache.hit_window("acme|chat|u2", 1, 60, 1_000.0))[0]
        assert (await cache.hit_window("other|chat|u1", 1, 60, 1_000.0))[0]
        await cache.close()


class TestSandboxRegistry:
    async def test_first_claim_wins(self):
        cache = _cache()

        mine = await cache.claim_sandbox(_record("h1"), 300)
        theirs = await cache.claim_sandbox(_record("h2"), 300)

        assert mine.handle_id == "h1"
        assert theirs.handle_id == "h1"
        assert (await cache.get_sandbox("s1")).handle_id == "h1"
        await cache.close()

    async def test_concurrent_claims_agree_on_one_owner(self):
        cache = _cache()

        owners = await asyncio.gather(*(cache.claim_sandbox(_record(f"h{n}"), 300) for n in range(10)))

        assert len({owner.handle_id for owner in owners}) == 1
        await cache.close()

    async def test_touch_updates_last_used_and_ttl(self):
        cache = _cache()
        await cache.claim_sandbox(_record(), 30)

        await cache.touch_sandbox("s1", 250.5, 600)

        record = await cache.get_sandbox("s1")
        assert record.last_used_at == 250.5
        assert record.created_at == 100.0
        assert await cache.client.ttl("sandbox:session:s1") > 30
        await cache.close()

    async def test_touch_missing_entry_creates_nothing(self):
        cache = _cache()

        await cache.touch_sandbox("ghost", 1.0, 60)

        assert await cache.get_sandbox("ghost") is None
        assert await cache.client.exists("sandbox:session:ghost") == 0
        await cache.close()

    async def test_delete_only_by_owner(self):
        cache = _cache()
        await cache.claim_sandbox(_record("h1"), 300)

        assert await cache.delete_sandbox("s1", "h2") is False
        assert await cache.get_sandbox("s1") is not None
        assert await cache.delete_sandbox("s1", "h1") is True
        assert await cache.get_sandbox("s1") is None
        assert await cache.delete_sandbox("s1", "h1") is False
        await cache.close()

    async def test_claim_sets_ttl(self):
        cache = _cache()
        await cache.claim_sandbox(_record(), 45)

        assert 0 < await cache.client.ttl("sandbox:session:s1") <= 45
        await cache.close()
