from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from chatcore.config import SandboxBackend, Settings, get_settings, reset_settings_cache
from chatcore.logging import get_logger
from chatcore.service.auth import AuthService
from chatcore.service.builtin_tools import register_builtin_tools
from chatcore.service.context import ContextAssembler
from chatcore.service.errors import ConfigurationError
from chatcore.service.orchestrator import Orchestrator
from chatcore.service.providers import build_provider_chain
from chatcore.service.rate_limit import RateLimiter
from chatcore.service.sandbox_manager import (
    LocalProcessBackend,
    RemoteSandboxBackend,
    SandboxManager,
    resolve_jail,
)
from chatcore.service.tools import ToolRegistry
from chatcore.storage.memory import MemoryCache, MemoryStore
from chatcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_cache(settings: Settings) -> Union[RedisCache, MemoryCache]:
    if settings.test_mode:
        return MemoryCache()
    redis_error: Exception | None = None
    if settings.redis_url:
        cache = RedisCache(settings.redis_url)
        try:
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc
    if not settings.allow_redis_fallback_dev:
        raise ConfigurationError(
            "Redis is required for rate limits and the sandbox registry; start Redis or "
            "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message="Running without Redis; rate limits and sandbox claims are per-process only.",
    )
    return MemoryCache()


def _build_sandbox_backend(settings: Settings) -> Union[LocalProcessBackend, RemoteSandboxBackend]:
    if settings.sandbox_backend is SandboxBackend.REMOTE:
        return RemoteSandboxBackend(
            settings.sandbox_api_url,
            settings.sandbox_api_key,
            timeout=settings.tool_timeout_seconds,
        )
    jail = resolve_jail(settings.sandbox_jail_binary)
    if jail is None:
        if settings.sandbox_allow_unjailed:
            logger.warning(
                "sandbox_unjailed",
                message="Local sandboxes run without a namespace jail; dev and test use only.",
            )
        else:
            logger.error("sandbox_jail_missing", binary=settings.sandbox_jail_binary)
    return LocalProcessBackend(
        settings.sandbox_root,
        max_memory_mb=settings.sandbox_max_memory_mb,
        max_cpu_seconds=settings.sandbox_max_cpu_seconds,
        max_output_bytes=settings.sandbox_max_output_bytes,
        jail=jail,
        allow_unjailed=settings.sandbox_allow_unjailed,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if not self.settings.use_memory_store:
            raise ConfigurationError("only the in-memory chat store is bundled; set USE_MEMORY_STORE=true")
        self.store = MemoryStore()
        self.cache = _build_cache(self.settings)

        self.auth = AuthService(self.store)
        self.rate_limiter = RateLimiter(self.cache, timeout_seconds=self.settings.rate_limit_timeout_seconds)
        self.tools = register_builtin_tools(ToolRegistry(lambda: self.settings))
        self.sandboxes = SandboxManager(
            _build_sandbox_backend(self.settings),
            self.cache,
            idle_timeout_seconds=self.settings.sandbox_idle_timeout_seconds,
        )
        self.providers = build_provider_chain(self.settings)
        self.assembler = ContextAssembler.from_settings(self.settings)
        self.orchestrator = Orchestrator(
            settings=self.settings,
            store=self.store,
            auth=self.auth,
            rate_limiter=self.rate_limiter,
            registry=self.tools,
            sandboxes=self.sandboxes,
            providers=self.providers,
            assembler=self.assembler,
        )
        self._sweeper: Optional[asyncio.Task] = None

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            providers=[p.name for p in self.providers.providers()],
            sandbox_backend=self.sandboxes.backend.name,
            tools=[d.name for d in self.tools.list_available()],
        )

    def validate_startup(self) -> None:
        """Fail fast on configuration the first request would trip over."""
        missing = self.tools.missing_mandatory()
        if missing:
            raise ConfigurationError(
                "mandatory tools are unavailable; check their credentials",
                detail={"tools": missing},
            )
        if not self.settings.test_mode and not any(p.is_available() for p in self.providers.providers()):
            raise ConfigurationError("no model provider has an API key configured")
        self.assembler.system_message()

    def start_background_tasks(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(
                self.sandboxes.run_sweeper(self.settings.sandbox_sweep_interval_seconds)
            )

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.sandboxes.close()
        await self.cache.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
