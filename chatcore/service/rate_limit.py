from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

from chatcore.logging import get_logger

logger = get_logger(__name__)

CHAT_SCOPE = "chat"


def tool_scope(tool_name: str) -> str:
    return f"tool:{tool_name}"


class RateLimitBackend(Protocol):
    """Counter store that checks and increments a window in one atomic step."""

    async def hit_window(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> Tuple[bool, int, int]:
        ...


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int

    def scaled(self, multiplier: float) -> "RateLimitPolicy":
        return RateLimitPolicy(max(1, int(self.limit * multiplier)), self.window_seconds)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    reason: Optional[str] = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(max(0, self.reset_seconds)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, self.reset_seconds))
        return headers


class RateLimiter:
    """Windowed counters keyed by (tenant, user, scope); fails closed.

    Any failure to get a definite answer from the backend (connection error,
    timeout, malformed reply, nonsensical policy) is a denial. There is no
    code path that allows a request without a successful atomic increment.
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        *,
        timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    @staticmethod
    def scope_key(tenant_id: str, user_id: str, scope: str) -> str:
        return f"{tenant_id}|{scope}|{user_id}"

    async def check(
        self,
        scope_key: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        if limit <= 0 or window_seconds <= 0:
            logger.error(
                "rate_limit_invalid_policy",
                scope_key=scope_key,
                limit=limit,
                window_seconds=window_seconds,
            )
            return RateLimitDecision(False, max(limit, 0), 0, max(window_seconds, 1), "invalid_policy")

        try:
            allowed, count, reset_seconds = await asyncio.wait_for(
                self.backend.hit_window(scope_key, limit, window_seconds, self.clock()),
                timeout=self.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "rate_limit_backend_unavailable",
                scope_key=scope_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateLimitDecision(False, limit, 0, window_seconds, "backend_unavailable")

        remaining = max(0, limit - int(count))
        if not allowed:
            logger.info("rate_limit_denied", scope_key=scope_key, limit=limit, reset_seconds=reset_seconds)
            return RateLimitDecision(False, limit, 0, int(reset_seconds), "limit_exceeded")
        return RateLimitDecision(True, limit, remaining, int(reset_seconds))

    async def check_policy(
        self,
        *,
        tenant_id: str,
        user_id: str,
        scope: str,
        policy: RateLimitPolicy,
    ) -> RateLimitDecision:
        return await self.check(
            self.scope_key(tenant_id, user_id, scope), policy.limit, policy.window_seconds
        )
