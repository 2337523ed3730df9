"""Per-session sandbox lifecycle.

Provisioning -> Ready -> Executing -> Ready ... -> Destroyed. A handle is
bound to exactly one turn session and one user; the binding is claimed in
the shared registry (Redis or the in-process cache) before any backend
resource is created, so two sessions can never end up holding the same
handle.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import sys
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from chatcore.logging import get_logger
from chatcore.service.sandbox import (
    SandboxConfig,
    SandboxError,
    SandboxExecutionError,
    SandboxProvisionError,
    apply_resource_limits,
    ensure_scratch_dir,
    validate_path_access,
)
from chatcore.service.session import TurnSession
from chatcore.storage.models import SandboxRecord

logger = get_logger(__name__)


class SandboxState(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    EXECUTING = "executing"
    DESTROYED = "destroyed"


@dataclass
class SandboxHandle:
    id: str
    session_id: str
    user_id: str
    tenant_id: str
    created_at: float
    last_used_at: float
    state: SandboxState = SandboxState.PROVISIONING
    backend_ref: Any = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


@dataclass(frozen=True)
class SandboxCommand:
    code: str
    language: str = "python"


@dataclass(frozen=True)
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    duration_ms: float = 0.0


class SandboxBackend(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    async def provision(self, handle: SandboxHandle) -> Any:
        ...

    async def execute(
        self, handle: SandboxHandle, command: SandboxCommand, timeout: float
    ) -> ExecutionResult:
        ...

    async def destroy(self, handle: SandboxHandle) -> None:
        ...


class SandboxRegistry(Protocol):
    async def claim_sandbox(self, record: SandboxRecord, ttl_seconds: int) -> SandboxRecord:
        ...

    async def touch_sandbox(self, session_id: str, last_used_at: float, ttl_seconds: int) -> None:
        ...

    async def delete_sandbox(self, session_id: str, handle_id: str) -> bool:
        ...


def _truncate_output(raw: bytes, limit: int) -> str:
    text = raw.decode("utf-8", errors="replace")
    if len(text) > limit:
        return text[:limit] + "\n[output truncated]"
    return text


def resolve_jail(binary: Optional[str]) -> Optional[str]:
    """Absolute path of the jail launcher (bubblewrap), or None if it is not installed."""
    if not binary:
        return None
    return shutil.which(binary)


class LocalProcessBackend:
    """Runs each handle's commands as rlimited child processes in its own scratch dir.

    With ``jail`` set, every command runs under bubblewrap in fresh
    namespaces. Only the handle's scratch directory is mounted writable
    (at ``/sandbox``), ``/proc`` belongs to the jail's own pid namespace and
    the environment is cleared, so a sandbox sees neither sibling scratch
    directories nor the server process. Without a jail the backend is
    unavailable unless ``allow_unjailed`` is set (tests and local dev).
    """

    name = "local"

    JAIL_MOUNT = "/sandbox"
    _INTERPRETERS = {
        "python": lambda python, path: [python, "-I", "-B", path],
        "shell": lambda python, path: ["/bin/sh", path],
    }
    _SUFFIX = {"python": ".py", "shell": ".sh"}
    _SYSTEM_MOUNTS = ("/usr", "/bin", "/lib", "/lib64", "/etc/alternatives", "/etc/ssl")

    def __init__(
        self,
        root: str | Path,
        *,
        max_memory_mb: int = 512,
        max_cpu_seconds: int = 30,
        max_output_bytes: int = 64 * 1024,
        jail: Optional[str] = None,
        allow_unjailed: bool = False,
    ) -> None:
        self.root = Path(root)
        self.max_memory_mb = max_memory_mb
        self.max_cpu_seconds = max_cpu_seconds
        self.max_output_bytes = max_output_bytes
        self.jail = jail
        self.allow_unjailed = allow_unjailed

    def is_available(self) -> bool:
        return os.name == "posix" and (self.jail is not None or self.allow_unjailed)

    def _config(self, scratch: Path) -> SandboxConfig:
        return SandboxConfig(
            max_memory_mb=self.max_memory_mb,
            max_cpu_seconds=self.max_cpu_seconds,
            scratch_dir=scratch,
        )

    def command_argv(self, scratch: Path, language: str) -> List[str]:
        build = self._INTERPRETERS.get(language)
        if build is None:
            raise SandboxError(f"unsupported sandbox language: {language}")
        script_name = f"main{self._SUFFIX[language]}"
        python = os.path.realpath(sys.executable)
        if self.jail is None:
            return build(python, str(scratch / script_name))

        argv = [
            self.jail,
            "--die-with-parent",
            "--new-session",
            "--unshare-all",
            "--clearenv",
            "--setenv", "PATH", "/usr/bin:/bin",
            "--setenv", "HOME", self.JAIL_MOUNT,
            "--setenv", "PYTHONIOENCODING", "utf-8",
            "--proc", "/proc",
            "--dev", "/dev",
            "--tmpfs", "/tmp",
        ]
        for mount in self._SYSTEM_MOUNTS:
            argv += ["--ro-bind-try", mount, mount]
        prefix = os.path.realpath(sys.base_prefix)
        if not prefix.startswith("/usr"):
            argv += ["--ro-bind", prefix, prefix]
        argv += ["--bind", str(scratch), self.JAIL_MOUNT, "--chdir", self.JAIL_MOUNT, "--"]
        return argv + build(python, f"{self.JAIL_MOUNT}/{script_name}")

    async def provision(self, handle: SandboxHandle) -> Path:
        if not self.is_available():
            raise SandboxProvisionError("local sandbox has no jail configured")
        root_config = SandboxConfig(scratch_dir=self.root)
        scratch = validate_path_access(self.root / handle.id, root_config)
        try:
            await asyncio.to_thread(ensure_scratch_dir, self._config(scratch))
        except OSError as exc:
            raise SandboxProvisionError("could not create sandbox scratch directory") from exc
        return scratch

    async def execute(
        self, handle: SandboxHandle, command: SandboxCommand, timeout: float
    ) -> ExecutionResult:
        scratch: Path = handle.backend_ref
        argv = self.command_argv(scratch, command.language)
        script = scratch / f"main{self._SUFFIX[command.language]}"
        await asyncio.to_thread(script.write_text, command.code, "utf-8")

        started = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(scratch),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={"PATH": "/usr/bin:/bin", "HOME": str(scratch), "PYTHONIOENCODING": "utf-8"},
            preexec_fn=partial(apply_resource_limits, self._config(scratch)),
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._kill(proc)
            await proc.wait()
            raise SandboxExecutionError(
                f"sandbox command timed out after {timeout}s", exit_code=None
            ) from exc
        except asyncio.CancelledError:
            self._kill(proc)
            raise
        return ExecutionResult(
            stdout=_truncate_output(stdout, self.max_output_bytes),
            stderr=_truncate_output(stderr, self.max_output_bytes),
            exit_code=proc.returncode,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    async def destroy(self, handle: SandboxHandle) -> None:
        if handle.backend_ref is not None:
            await asyncio.to_thread(shutil.rmtree, handle.backend_ref, True)


class RemoteSandboxBackend:
    """Client for an HTTP sandbox provider.

    Expects ``POST /sandboxes`` -> ``{"id": ...}``,
    ``POST /sandboxes/{id}/exec`` -> ``{"stdout", "stderr", "exit_code"}`` and
    ``DELETE /sandboxes/{id}``.
    """

    name = "remote"

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def is_available(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def provision(self, handle: SandboxHandle) -> str:
        if not self.is_available():
            raise SandboxProvisionError("sandbox provider credential is not configured")
        try:
            resp = await self._http().post(
                "/sandboxes",
                json={"session": handle.session_id, "owner": handle.user_id, "label": handle.id},
            )
            resp.raise_for_status()
            remote_id = resp.json().get("id")
        except (httpx.HTTPError, ValueError) as exc:
            raise SandboxProvisionError("sandbox provider unreachable or rejected the request") from exc
        if not remote_id:
            raise SandboxProvisionError("sandbox provider returned no sandbox id")
        return str(remote_id)

    async def execute(
        self, handle: SandboxHandle, command: SandboxCommand, timeout: float
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            resp = await self._http().post(
                f"/sandboxes/{handle.backend_ref}/exec",
                json={"language": command.language, "code": command.code, "timeout": timeout},
                timeout=timeout + 5,
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as exc:
            raise SandboxExecutionError("sandbox command timed out", exit_code=None) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise SandboxError("sandbox provider request failed") from exc
        exit_code = body.get("exit_code")
        return ExecutionResult(
            stdout=str(body.get("stdout") or ""),
            stderr=str(body.get("stderr") or ""),
            exit_code=int(exit_code) if exit_code is not None else None,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )

    async def destroy(self, handle: SandboxHandle) -> None:
        if handle.backend_ref is None:
            return
        resp = await self._http().delete(f"/sandboxes/{handle.backend_ref}")
        if resp.status_code not in (200, 202, 204, 404):
            resp.raise_for_status()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SandboxManager:
    """Acquire, execute on, and release per-session sandboxes."""

    def __init__(
        self,
        backend: SandboxBackend,
        registry: SandboxRegistry,
        *,
        idle_timeout_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.idle_timeout_seconds = idle_timeout_seconds
        self.clock = clock
        self._handles: Dict[str, SandboxHandle] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}

    @property
    def active_count(self) -> int:
        return len(self._handles)

    def is_available(self) -> bool:
        return self.backend.is_available()

    def handle_for(self, session_id: str) -> Optional[SandboxHandle]:
        handle = self._handles.get(session_id)
        if handle and handle.state is not SandboxState.DESTROYED:
            return handle
        return None

    async def acquire(self, session: TurnSession) -> SandboxHandle:
        lock = self._session_locks.setdefault(session.id, asyncio.Lock())
        async with lock:
            existing = self.handle_for(session.id)
            if existing is not None:
                if existing.user_id != session.user_id:
                    raise SandboxProvisionError("sandbox belongs to a different user")
                logger.debug("sandbox_reused", handle_id=existing.id, session_id=session.id)
                session.sandbox = existing
                return existing
            return await self._provision(session)

    async def _provision(self, session: TurnSession) -> SandboxHandle:
        if not self.backend.is_available():
            raise SandboxProvisionError("sandbox backend is not available")

        now = self.clock()
        record = SandboxRecord(
            handle_id=f"sbx_{uuid.uuid4().hex}",
            session_id=session.id,
            user_id=session.user_id,
            tenant_id=session.tenant_id,
            created_at=now,
            last_used_at=now,
        )
        try:
            claimed = await self.registry.claim_sandbox(record, self.idle_timeout_seconds)
        except Exception as exc:
            logger.error("sandbox_registry_unavailable", session_id=session.id, error=str(exc))
            raise SandboxProvisionError("sandbox registry unavailable") from exc
        if claimed.handle_id != record.handle_id:
            logger.warning(
                "sandbox_claim_conflict",
                session_id=session.id,
                claimed_by=claimed.user_id,
                requested_by=session.user_id,
            )
            raise SandboxProvisionError("session already holds a sandbox elsewhere")

        handle = SandboxHandle(
            id=record.handle_id,
            session_id=session.id,
            user_id=session.user_id,
            tenant_id=session.tenant_id,
            created_at=now,
            last_used_at=now,
        )
        self._handles[session.id] = handle
        try:
            handle.backend_ref = await self.backend.provision(handle)
        except (SandboxProvisionError, asyncio.CancelledError):
            await self._abandon(handle)
            raise
        except Exception as exc:
            await self._abandon(handle)
            raise SandboxProvisionError("sandbox provider failed to provision") from exc

        handle.state = SandboxState.READY
        session.sandbox = handle
        logger.info(
            "sandbox_acquired",
            handle_id=handle.id,
            session_id=session.id,
            user_id=session.user_id,
            backend=self.backend.name,
        )
        return handle

    async def execute(
        self, handle: SandboxHandle, command: SandboxCommand, *, timeout: float = 30.0
    ) -> ExecutionResult:
        async with handle._lock:
            if handle.state is SandboxState.DESTROYED:
                raise SandboxError("sandbox handle has been destroyed")
            if handle.state is not SandboxState.READY:
                raise SandboxError(f"sandbox handle not ready: {handle.state.value}")
            handle.state = SandboxState.EXECUTING
            try:
                result = await self.backend.execute(handle, command, timeout)
            finally:
                if handle.state is SandboxState.EXECUTING:
                    handle.state = SandboxState.READY
                handle.last_used_at = self.clock()
                await self._touch(handle)

        logger.info(
            "sandbox_executed",
            handle_id=handle.id,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
        if result.exit_code != 0:
            raise SandboxExecutionError(
                f"command exited with status {result.exit_code}",
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
            )
        return result

    async def _touch(self, handle: SandboxHandle) -> None:
        if handle.state is SandboxState.DESTROYED:
            return
        try:
            await self.registry.touch_sandbox(
                handle.session_id, handle.last_used_at, self.idle_timeout_seconds
            )
        except Exception as exc:
            # Registry TTL lapses on its own; the local sweeper still bounds the handle
            logger.warning("sandbox_touch_failed", handle_id=handle.id, error=str(exc))

    async def _abandon(self, handle: SandboxHandle) -> None:
        self._handles.pop(handle.session_id, None)
        handle.state = SandboxState.DESTROYED
        await self._forget(handle)

    async def _forget(self, handle: SandboxHandle) -> None:
        try:
            await self.registry.delete_sandbox(handle.session_id, handle.id)
        except Exception as exc:
            logger.warning("sandbox_registry_delete_failed", handle_id=handle.id, error=str(exc))

    async def release(self, session: TurnSession | str, *, reason: str = "session_end") -> bool:
        session_id = session if isinstance(session, str) else session.id
        handle = self._handles.pop(session_id, None)
        self._session_locks.pop(session_id, None)
        if not isinstance(session, str):
            session.sandbox = None
        if handle is None or handle.state is SandboxState.DESTROYED:
            return False
        handle.state = SandboxState.DESTROYED
        try:
            await self.backend.destroy(handle)
        except Exception as exc:
            logger.error(
                "sandbox_destroy_failed",
                handle_id=handle.id,
                backend=self.backend.name,
                error=str(exc),
            )
        await self._forget(handle)
        logger.info("sandbox_released", handle_id=handle.id, session_id=session_id, reason=reason)
        return True

    async def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """Release handles idle longer than the timeout; returns released handle ids."""
        current = self.clock() if now is None else now
        stale = [
            (session_id, handle)
            for session_id, handle in list(self._handles.items())
            if handle.state is not SandboxState.EXECUTING
            and current - handle.last_used_at > self.idle_timeout_seconds
        ]
        released = []
        for session_id, handle in stale:
            if await self.release(session_id, reason="idle_timeout"):
                released.append(handle.id)
        return released

    async def run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            released = await self.sweep_idle()
            if released:
                logger.info("sandbox_sweep_released", count=len(released))

    async def close(self) -> None:
        for session_id in list(self._handles):
            await self.release(session_id, reason="shutdown")
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()
