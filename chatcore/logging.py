"""structlog setup plus the scrubbers applied to anything a client can see.

Log lines are keyed by event name (``logger.info("tool_call", tool=...)``)
and carry the request's correlation id, which the API also returns as
``X-Request-ID``. Output format is chosen once at import from ``LOG_LEVEL``,
``LOG_JSON`` and ``LOG_DEV_MODE``.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Event keys whose string values are masked down to their first and last two characters
_MASKED_LOG_KEYS = ("password", "secret", "token", "api_key", "authorization", "email", "cookie")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _inject_correlation_id(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _is_token_count(key: str) -> bool:
    return key.endswith("_tokens") or key.startswith("token_")


def _mask_secrets(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if _is_token_count(lowered) or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in lowered for marker in _MASKED_LOG_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_correlation_id,
        _mask_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Error text: each rule is replaced wholesale wherever it matches
_SCRUB_RULES: Tuple[Tuple[str, "re.Pattern[str]"], ...] = tuple(
    (label, re.compile(pattern))
    for label, pattern in (
        ("sql", r"(?i)\b(select|insert|update|delete)\s+.{0,50}\b(from|into|set|where)\b.{0,50}"),
        ("db_error", r"(?i)database\s+error"),
        ("connection", r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
        ("dsn", r"(?i)\b(redis|postgres(?:ql)?|mysql)://\S+"),
        ("posix_path", r"(?i)/(?:home|var|etc|usr|opt|tmp|root|srv)/\S+"),
        ("windows_path", r"(?i)[a-z]:\\\S+"),
        ("assignment", r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+"),
        ("provider_key", r"(?i)\b(sk|pk|rk)-[a-z0-9_\-]{8,}"),
        ("bearer", r"(?i)bearer\s+[a-z0-9._\-]+"),
        ("traceback", r"(?i)traceback\s*\(most recent call last\)"),
        ("frame", r'(?i)file\s+"[^"]+",\s+line\s+\d+'),
        ("dunder", r"(?i)_internal_|_private_|__[a-z]+__"),
    )
)
MAX_ERROR_CHARS = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Return ``error`` with credentials, paths, queries and tracebacks replaced.

    The result is capped at ``MAX_ERROR_CHARS`` and safe for API bodies and
    stream events. Non-string input yields a generic message.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    for _, pattern in _SCRUB_RULES:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_ERROR_CHARS:
        error = error[: MAX_ERROR_CHARS - 3] + "..."
    return error


_SECRET_FIELD_MARKERS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "auth",
        "credentials",
        "private_key",
        "privatekey",
        "secretkey",
        "access_key",
        "accesskey",
    }
)


def _is_secret_field(key: Any) -> bool:
    normalized = str(key).lower().replace("-", "_").replace(" ", "_")
    return any(marker in normalized for marker in _SECRET_FIELD_MARKERS)


def _placeholder(value: Any) -> Any:
    """Same-typed stand-in so clients parsing the payload do not break."""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return 0
    return "[REDACTED]"


def sanitize_response_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Copy ``data`` with values under secret-looking keys replaced, at any depth."""
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: _placeholder(value)
            if _is_secret_field(key)
            else sanitize_response_data(value, depth=depth + 1, max_depth=max_depth)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize_response_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data


def _trace_summary(entries: Iterable[Any]) -> List[Dict[str, Any]]:
    summary = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        item: Dict[str, Any] = {"state": entry.get("state"), "elapsed_ms": entry.get("elapsed_ms")}
        if entry.get("tool"):
            item["tool"] = entry["tool"]
        if "error" in entry:
            item["error"] = sanitize_error_message(str(entry["error"]))
        summary.append(item)
    return summary


def log_turn_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Emit one ``turn_trace`` line: states, timings, tools and scrubbed errors."""
    (logger or get_logger("orchestrator")).info("turn_trace", trace=_trace_summary(trace))
