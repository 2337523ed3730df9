"""Sandbox primitives shared by tools.

- Safe expression evaluation (safe_eval_expr)
- Resource limits applied to sandboxed child processes
- Scratch-directory confinement
- Allowlisted outbound HTTP for tools
- Sandbox error types
"""
from __future__ import annotations

import ast
import ipaddress
import math
import operator
import resource
import socket
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx

from chatcore.logging import get_logger

logger = get_logger(__name__)

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_MAX_RECURSION_DEPTH = 100
# Keeps 9**9**9 style inputs from pinning a worker
_MAX_POWER_EXPONENT = 10000

MATH_CALLABLES: dict[str, Any] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "log": math.log,
    "log10": math.log10,
    "exp": math.exp,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "floor": math.floor,
    "ceil": math.ceil,
}

MATH_NAMES: dict[str, Any] = {"pi": math.pi, "e": math.e, "tau": math.tau}


def _eval_node(
    node: ast.AST,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None,
    _depth: int = 0,
) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, allowed_callables, _depth + 1)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, (int, float, complex, str, bool)) or node.value is None:
            return node.value
        raise ValueError("unsupported constant")

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.BoolOp):
        values = [bool(_eval_node(v, names, allowed_callables, _depth + 1)) for v in node.values]
        if isinstance(node.op, ast.And):
            return all(values)
        if isinstance(node.op, ast.Or):
            return any(values)
        raise ValueError("unsupported boolean operator")

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, allowed_callables, _depth + 1)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        left = _eval_node(node.left, names, allowed_callables, _depth + 1)
        right = _eval_node(node.right, names, allowed_callables, _depth + 1)
        if op is operator.pow and isinstance(right, (int, float)) and abs(right) > _MAX_POWER_EXPONENT:
            raise ValueError("exponent too large")
        return op(left, right)

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, allowed_callables, _depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = _eval_node(comparator, names, allowed_callables, _depth + 1)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name):
            raise ValueError("callable references must be simple names")
        if not allowed_callables or node.func.id not in allowed_callables:
            raise ValueError("callable is not permitted")
        if node.keywords:
            raise ValueError("keyword arguments not permitted")
        args = [_eval_node(arg, names, allowed_callables, _depth + 1) for arg in node.args]
        return allowed_callables[node.func.id](*args)

    if isinstance(node, ast.Tuple):
        return tuple(_eval_node(elt, names, allowed_callables, _depth + 1) for elt in node.elts)

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any] | None = None,
    allowed_callables: Mapping[str, Any] | None = None,
) -> Any:
    """Evaluate an expression with a constrained AST allowlist.

    Supports arithmetic, comparisons, boolean operators and calls to the
    explicitly allowed callables. Attribute access, subscripts,
    comprehensions and lambdas are rejected.
    """

    try:
        parsed = ast.parse(expr, mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc

    for node in ast.walk(parsed):
        if isinstance(
            node,
            (
                ast.Attribute,
                ast.Subscript,
                ast.Lambda,
                ast.ListComp,
                ast.SetComp,
                ast.DictComp,
                ast.GeneratorExp,
                ast.Await,
                ast.Yield,
                ast.YieldFrom,
                ast.NamedExpr,
            ),
        ):
            raise ValueError("disallowed syntax in expression")

    return _eval_node(parsed, names or {}, allowed_callables)


class SandboxError(Exception):
    """Raised when sandbox constraints are violated or a handle is misused."""


class SandboxProvisionError(SandboxError):
    """A sandbox could not be created for the session."""


class SandboxExecutionError(SandboxError):
    """A command exited non-zero or timed out inside a live sandbox."""

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


@dataclass
class SandboxConfig:
    """Resource caps for sandboxed child processes.

    Attributes:
        max_memory_mb: Address-space cap in MB
        max_cpu_seconds: CPU time cap in seconds
        max_file_size_mb: Largest file the process may write
        max_processes: Cap on processes the sandbox user may own
        scratch_dir: The only directory the process may write to
    """

    max_memory_mb: int = 512
    max_cpu_seconds: int = 30
    max_file_size_mb: int = 100
    max_processes: int = 64
    scratch_dir: Optional[Path] = None


@dataclass
class ToolNetworkPolicy:
    """Network egress policy for tool fetches.

    Attributes:
        allowlist: Allowed target host patterns (hostname, wildcard, or CIDR)
        proxy_url: Optional HTTP proxy all tool fetches must use
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
    """

    allowlist: list[str] = field(default_factory=list)
    proxy_url: Optional[str] = None
    connect_timeout: float = 10.0
    total_timeout: float = 30.0


def build_tool_network_policy(
    *,
    allowlist: Sequence[str] | None,
    proxy_url: Optional[str],
    connect_timeout: float = 10.0,
    total_timeout: float = 30.0,
) -> ToolNetworkPolicy:
    normalized = [entry.strip().lower() for entry in allowlist or [] if entry and entry.strip()]
    return ToolNetworkPolicy(
        allowlist=normalized,
        proxy_url=proxy_url,
        connect_timeout=connect_timeout,
        total_timeout=total_timeout,
    )


def host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    if not host:
        return False
    lowered = host.lower()
    for entry in allowlist:
        candidate = entry.lower()
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate:
            return True
        elif "/" in candidate:
            try:
                if ipaddress.ip_address(host) in ipaddress.ip_network(candidate, strict=False):
                    return True
            except ValueError:
                continue
    return False


def _resolve_host(host: str) -> list[str]:
    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror as exc:
        raise SandboxError(f"could not resolve host '{host}'") from exc
    return sorted({info[4][0] for info in infos})


def _is_internal_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def _explicitly_allowed(address: ipaddress.IPv4Address | ipaddress.IPv6Address, allowlist: Sequence[str]) -> bool:
    for entry in allowlist:
        if "/" not in entry:
            continue
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


@dataclass
class FetchedPage:
    url: str
    status_code: int
    content_type: str
    text: str
    truncated: bool


class AllowlistedFetcher:
    """HTTP client enforcing the tool network allowlist and proxy.

    The hostname must match the allowlist, and every address it resolves to
    must be public unless a CIDR entry names it explicitly.
    """

    def __init__(
        self,
        policy: ToolNetworkPolicy,
        *,
        resolver: Callable[[str], Sequence[str]] = _resolve_host,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.policy = policy
        self.resolver = resolver
        self.transport = transport

    def check_target(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"}:
            raise SandboxError("only http(s) URLs may be fetched by tools")
        host = parsed.hostname
        if not host:
            raise SandboxError("URL is missing host for tool fetch")

        if not self.policy.allowlist:
            raise SandboxError("Tool network allowlist is empty; outbound fetch blocked")

        if not host_matches_allowlist(host, self.policy.allowlist):
            raise SandboxError(f"Target host '{host}' is not allowlisted for tool fetch")

        for raw in self.resolver(host):
            try:
                address = ipaddress.ip_address(raw.split("%", 1)[0])
            except ValueError as exc:
                raise SandboxError(f"host '{host}' resolved to an invalid address") from exc
            if _is_internal_address(address) and not _explicitly_allowed(address, self.policy.allowlist):
                logger.warning("tool_fetch_internal_address", host=host, address=str(address))
                raise SandboxError(f"Target host '{host}' resolves to a non-public address")
        return host

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.policy.total_timeout, connect=self.policy.connect_timeout),
            proxy=self.policy.proxy_url,
            transport=self.transport,
            follow_redirects=False,
        )

    def fetch_text(self, url: str, *, max_chars: int) -> FetchedPage:
        """GET ``url`` and read at most ``max_chars`` characters of its body."""
        self.check_target(url)
        parts: list[str] = []
        size = 0
        truncated = False
        try:
            with self._client() as client:
                with client.stream("GET", url) as response:
                    for chunk in response.iter_text():
                        if size + len(chunk) > max_chars:
                            parts.append(chunk[: max_chars - size])
                            truncated = True
                            break
                        parts.append(chunk)
                        size += len(chunk)
                    status_code = response.status_code
                    content_type = response.headers.get("content-type", "")
        except httpx.TimeoutException as exc:
            raise SandboxError("tool fetch timed out") from exc
        except httpx.HTTPError as exc:
            raise SandboxError(f"tool fetch failed: {exc}") from exc
        return FetchedPage(
            url=url,
            status_code=status_code,
            content_type=content_type,
            text="".join(parts),
            truncated=truncated,
        )


def validate_path_access(path: str | Path, config: SandboxConfig) -> Path:
    """Resolve ``path`` and require it to sit inside the scratch directory."""
    path_obj = Path(path).resolve()
    if config.scratch_dir:
        scratch_resolved = config.scratch_dir.resolve()
        if path_obj == scratch_resolved or scratch_resolved in path_obj.parents:
            return path_obj
    raise SandboxError(
        f"Path '{path}' is outside the sandbox scratch directory"
    )


def apply_resource_limits(config: SandboxConfig) -> dict[str, bool]:
    """Apply rlimits to the current process.

    Meant to run in a freshly forked child (``preexec_fn``) right before it
    execs the sandboxed interpreter; the limits are inherited by anything it
    spawns.

    Returns:
        Dict indicating which limits were successfully applied
    """
    results = {}
    limits = {
        "memory": (resource.RLIMIT_AS, config.max_memory_mb * 1024 * 1024),
        "cpu": (resource.RLIMIT_CPU, config.max_cpu_seconds),
        "file_size": (resource.RLIMIT_FSIZE, config.max_file_size_mb * 1024 * 1024),
        "core": (resource.RLIMIT_CORE, 0),
        "processes": (resource.RLIMIT_NPROC, config.max_processes),
    }
    for label, (which, value) in limits.items():
        hard = value + 5 if label == "cpu" else value
        try:
            resource.setrlimit(which, (value, hard))
            results[label] = True
        except (ValueError, OSError):
            results[label] = False
    return results


def ensure_scratch_dir(config: SandboxConfig) -> Path:
    if config.scratch_dir is None:
        raise SandboxError("sandbox scratch directory not configured")
    config.scratch_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    return config.scratch_dir
