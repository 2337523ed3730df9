"""Model provider clients behind one streaming call signature.

Every provider yields :class:`TextDelta` events as text arrives and, once the
upstream response is complete, one :class:`ToolCallRequest` per requested
tool call in the order the model listed them. Upstream failures surface as
:class:`~chatcore.service.errors.ProviderError` with a normalized ``kind``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
)

import httpx
import openai
from openai import AsyncOpenAI

from chatcore.config import PROVIDER_BASE_URLS, Settings
from chatcore.logging import get_logger
from chatcore.service.errors import ConfigurationError, ProviderError, ValidationError

logger = get_logger(__name__)

# Used when the upstream says "rate limited" without a Retry-After header
DEFAULT_RETRY_AFTER_SECONDS = 5.0


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: str

    def as_assistant_tool_call(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


ProviderEvent = Union[TextDelta, ToolCallRequest]


class ProviderClient(Protocol):
    name: str
    model: str

    def is_available(self) -> bool:
        ...

    def stream(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ProviderEvent]:
        ...


def _retry_after(headers: Any) -> Optional[float]:
    if not headers:
        return None
    raw = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def classify_provider_error(exc: BaseException, *, provider: str) -> ProviderError:
    """Map SDK and transport exceptions onto :class:`ProviderError` kinds."""
    if isinstance(exc, ProviderError):
        return exc
    message = str(exc) or type(exc).__name__

    if isinstance(exc, openai.APITimeoutError):
        return ProviderError(message, kind="timeout", provider=provider, retryable=True)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(message, kind="network", provider=provider, retryable=True)
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        headers = getattr(exc.response, "headers", None)
        lowered = message.lower()
        if isinstance(exc, openai.RateLimitError) or status == 429:
            return ProviderError(
                message,
                kind="rate_limited",
                provider=provider,
                retryable=True,
                retry_after=_retry_after(headers) or DEFAULT_RETRY_AFTER_SECONDS,
                upstream_status=status,
            )
        if status in (401, 403):
            return ProviderError(message, kind="auth_failed", provider=provider, upstream_status=status)
        if "content_filter" in lowered or "content policy" in lowered or "content_policy" in lowered:
            return ProviderError(message, kind="content_filtered", provider=provider, upstream_status=status)
        if status == 408:
            return ProviderError(message, kind="timeout", provider=provider, retryable=True, upstream_status=status)
        if status >= 500:
            return ProviderError(message, kind="server_error", provider=provider, retryable=True, upstream_status=status)
        return ProviderError(message, kind="invalid_request", provider=provider, upstream_status=status)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(message, kind="timeout", provider=provider, retryable=True)
    if isinstance(exc, httpx.TransportError):
        return ProviderError(message, kind="network", provider=provider, retryable=True)
    return ProviderError(message, kind="unknown", provider=provider)


class OpenAICompatibleProvider:
    """Streams chat completions from any OpenAI-compatible endpoint."""

    def __init__(
        self,
        name: str,
        *,
        model: str,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        max_output_tokens: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.name = name
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_output_tokens = max_output_tokens
        self._client = client

    def is_available(self) -> bool:
        return bool(self.api_key) or self._client is not None

    def _sdk(self) -> AsyncOpenAI:
        if self._client is None:
            # SDK retries are off; fallback to the secondary provider is the only retry
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    async def stream(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ProviderEvent]:
        request: Dict[str, Any] = {"model": self.model, "messages": messages, "stream": True}
        if tools:
            request["tools"] = tools
        if self.max_output_tokens:
            request["max_tokens"] = self.max_output_tokens

        pending: Dict[int, Dict[str, str]] = {}
        try:
            response = await self._sdk().chat.completions.create(**request)
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    yield TextDelta(delta.content)
                for call in delta.tool_calls or []:
                    slot = pending.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                    if call.id:
                        slot["id"] = call.id
                    if call.function is not None:
                        if call.function.name:
                            slot["name"] += call.function.name
                        if call.function.arguments:
                            slot["arguments"] += call.function.arguments
        except (openai.OpenAIError, httpx.HTTPError) as exc:
            raise classify_provider_error(exc, provider=self.name) from exc

        for index in sorted(pending):
            slot = pending[index]
            if not slot["name"]:
                raise ProviderError(
                    "provider emitted a tool call without a name",
                    kind="invalid_request",
                    provider=self.name,
                )
            yield ToolCallRequest(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=slot["arguments"],
            )


ScriptItem = Union[str, Dict[str, Any], BaseException]


def _echo_reply(messages: Sequence[Dict[str, Any]]) -> List[ScriptItem]:
    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
    text = str(last_user.get("content") or "") if last_user else ""
    return [f"[scripted] {text}"]


@dataclass
class ScriptedProvider:
    """Deterministic provider that replays canned responses.

    Each response is a list of items: a ``str`` is streamed as text, a dict
    ``{"tool": name, "arguments": {...}}`` becomes a tool call, and an
    exception instance is raised at that point in the stream. Once the
    script runs out, ``default`` builds the reply (an echo of the last user
    message unless overridden).
    """

    name: str = "scripted"
    model: str = "scripted-1"
    responses: List[List[ScriptItem]] = field(default_factory=list)
    default: Callable[[Sequence[Dict[str, Any]]], List[ScriptItem]] = _echo_reply
    available: bool = True
    calls: List[Dict[str, Any]] = field(default_factory=list)

    def is_available(self) -> bool:
        return self.available

    async def stream(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ProviderEvent]:
        self.calls.append({"messages": [dict(m) for m in messages], "tools": list(tools)})
        script = self.responses.pop(0) if self.responses else self.default(messages)
        call_index = 0
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, str):
                yield TextDelta(item)
                continue
            call_index += 1
            arguments = item.get("arguments", {})
            yield ToolCallRequest(
                id=item.get("id") or f"call_{len(self.calls)}_{call_index}",
                name=item["tool"],
                arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
            )


@dataclass
class ProviderCursor:
    """Which provider a turn is currently talking to."""

    active: ProviderClient
    fell_back: bool = False

    @property
    def label(self) -> str:
        return f"{self.active.name}/{self.active.model}"


class ProviderChain:
    """Primary provider with at most one switch to a secondary per turn."""

    def __init__(self, primary: ProviderClient, fallback: Optional[ProviderClient] = None) -> None:
        self.primary = primary
        self.fallback = fallback

    def providers(self) -> List[ProviderClient]:
        return [p for p in (self.primary, self.fallback) if p is not None]

    def open(self, model: Optional[str] = None) -> ProviderCursor:
        """Pick the provider for a new turn, optionally pinned to a configured ``model``."""
        if model is not None:
            for provider in self.providers():
                if provider.model == model and provider.is_available():
                    return ProviderCursor(active=provider, fell_back=provider is not self.primary)
            raise ValidationError("model is not available", detail={"model": model})
        if self.primary.is_available():
            return ProviderCursor(active=self.primary)
        if self.fallback is not None and self.fallback.is_available():
            logger.warning("provider_primary_unavailable", primary=self.primary.name, fallback=self.fallback.name)
            return ProviderCursor(active=self.fallback, fell_back=True)
        raise ProviderError(
            "no model provider is configured",
            kind="auth_failed",
            provider=self.primary.name,
        )

    def _can_fall_back(self, cursor: ProviderCursor, exc: ProviderError) -> bool:
        return (
            exc.retryable
            and not cursor.fell_back
            and self.fallback is not None
            and self.fallback.is_available()
        )

    async def stream(
        self,
        cursor: ProviderCursor,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> AsyncIterator[ProviderEvent]:
        emitted = False
        try:
            async for event in cursor.active.stream(messages, tools):
                emitted = True
                yield event
            return
        except ProviderError as exc:
            # Once output reached the client, switching providers would splice two answers
            if emitted or not self._can_fall_back(cursor, exc):
                raise
            logger.warning(
                "provider_fallback",
                primary=cursor.active.name,
                fallback=self.fallback.name,
                kind=exc.kind,
                upstream_status=exc.upstream_status,
            )
            cursor.active = self.fallback
            cursor.fell_back = True
        async for event in cursor.active.stream(messages, tools):
            yield event


def build_provider(
    name: Optional[str],
    *,
    api_key: Optional[str],
    base_url: Optional[str],
    model: Optional[str],
    timeout: float,
    max_output_tokens: Optional[int],
) -> Optional[OpenAICompatibleProvider]:
    if not name:
        return None
    key = name.value if hasattr(name, "value") else str(name)
    resolved_url = base_url or PROVIDER_BASE_URLS.get(key)
    if key == "custom" and not resolved_url:
        raise ConfigurationError("custom provider requires a base url", detail={"provider": key})
    if not model:
        raise ConfigurationError("provider model is not configured", detail={"provider": key})
    return OpenAICompatibleProvider(
        key,
        model=model,
        api_key=api_key,
        base_url=resolved_url,
        timeout=timeout,
        max_output_tokens=max_output_tokens,
    )


def build_provider_chain(settings: Settings) -> ProviderChain:
    """Primary and optional fallback from settings; scripted echo in test mode without keys."""
    primary = build_provider(
        settings.primary_provider,
        api_key=settings.primary_api_key,
        base_url=settings.primary_base_url,
        model=settings.primary_model,
        timeout=settings.provider_timeout_seconds,
        max_output_tokens=settings.reserved_output_tokens or None,
    )
    fallback = build_provider(
        settings.fallback_provider,
        api_key=settings.fallback_api_key,
        base_url=settings.fallback_base_url,
        model=settings.fallback_model or settings.primary_model,
        timeout=settings.provider_timeout_seconds,
        max_output_tokens=settings.reserved_output_tokens or None,
    )
    if settings.test_mode and not (primary and primary.is_available()):
        return ProviderChain(ScriptedProvider(), fallback)
    return ProviderChain(primary, fallback)
