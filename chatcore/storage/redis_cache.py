from __future__ import annotations

import hashlib
import json
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from chatcore.storage.errors import BackingStoreUnavailable
from chatcore.storage.models import SandboxRecord


class RedisCache:
    """Redis-backed rate-limit windows and sandbox handle registry.

    Every mutation is a single Lua script call, so concurrent requests from
    the same user (two browser tabs, two API clients) cannot interleave a
    read with another request's write.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: reset when now - start > window, deny at limit, else count
    _WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'start', 'count')
local start = tonumber(data[1])
local count = tonumber(data[2])

if start == nil or count == nil or (now - start) > window then
  start = now
  count = 0
end

local reset_after = math.max(0, math.ceil(start + window - now))

if count >= limit then
  return {0, count, reset_after}
end

count = count + 1
redis.call('HSET', key, 'start', tostring(start), 'count', count)
redis.call('EXPIRE', key, math.max(reset_after, 1) + 1)
return {1, count, reset_after}
"""

    # Sandbox entries are hashes: record (JSON at claim time), handle_id, last_used_at
    _CLAIM_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  redis.call('HSET', KEYS[1], 'record', ARGV[1], 'handle_id', ARGV[2])
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[3]))
end
return redis.call('HMGET', KEYS[1], 'record', 'last_used_at')
"""

    _TOUCH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], 'last_used_at', ARGV[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
return 1
"""

    _RELEASE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'handle_id') ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client if client is not None else aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self.client.register_script(self._WINDOW_SCRIPT)
        self._claim = self.client.register_script(self._CLAIM_SCRIPT)
        self._touch = self.client.register_script(self._TOUCH_SCRIPT)
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup."""
        # Short-lived sync client so the async pool is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so user-controlled parts cannot collide via delimiters."""
        tenant, _, rest = key.partition("|")
        digest = hashlib.sha256(rest.encode()).hexdigest()
        return f"rate:{tenant}:{digest}"

    @staticmethod
    def _sandbox_key(session_id: str) -> str:
        return f"sandbox:session:{session_id}"

    async def hit_window(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> Tuple[bool, int, int]:
        reply = await self._window(
            keys=[self._normalize_rate_key(key)],
            args=[now, window_seconds, limit],
        )
        try:
            allowed, count, reset_after = reply
            return bool(int(allowed)), int(count), int(reset_after)
        except (TypeError, ValueError) as exc:
            raise BackingStoreUnavailable(f"malformed rate window reply: {reply!r}") from exc

    @staticmethod
    def _record_from_fields(values) -> Optional[SandboxRecord]:
        raw, last_used_at = values if values else (None, None)
        if not raw:
            return None
        record = SandboxRecord.from_dict(json.loads(raw))
        if last_used_at:
            record.last_used_at = float(last_used_at)
        return record

    async def claim_sandbox(self, record: SandboxRecord, ttl_seconds: int) -> SandboxRecord:
        reply = await self._claim(
            keys=[self._sandbox_key(record.session_id)],
            args=[json.dumps(record.to_dict()), record.handle_id, max(1, int(ttl_seconds))],
        )
        owner = self._record_from_fields(reply)
        if owner is None:
            raise BackingStoreUnavailable("sandbox claim returned no record")
        return owner

    async def get_sandbox(self, session_id: str) -> Optional[SandboxRecord]:
        values = await self.client.hmget(self._sandbox_key(session_id), ["record", "last_used_at"])
        return self._record_from_fields(values)

    async def touch_sandbox(self, session_id: str, last_used_at: float, ttl_seconds: int) -> None:
        await self._touch(
            keys=[self._sandbox_key(session_id)],
            args=[last_used_at, max(1, int(ttl_seconds))],
        )

    async def delete_sandbox(self, session_id: str, handle_id: str) -> bool:
        removed = await self._release(keys=[self._sandbox_key(session_id)], args=[handle_id])
        return bool(int(removed or 0))

    async def close(self) -> None:
        """Close the connection pool on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
