"""Tool registry: name -> descriptor lookup with live availability.

Tools are plain data plus an async handler. Adding one is a ``register``
call; the orchestrator never branches on tool names.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Tuple,
)

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from chatcore.config import Settings
from chatcore.logging import get_logger
from chatcore.service.errors import (
    DuplicateToolError,
    ToolArgumentError,
    ToolUnavailableError,
    UnknownToolError,
)
from chatcore.service.rate_limit import RateLimitPolicy

if TYPE_CHECKING:
    from chatcore.service.sandbox_manager import SandboxHandle, SandboxManager
    from chatcore.service.session import TurnSession

logger = get_logger(__name__)


@dataclass
class ToolContext:
    """What a handler may touch while running one call."""

    session: "TurnSession"
    settings: Settings
    sandbox: Optional["SandboxHandle"] = None
    sandbox_manager: Optional["SandboxManager"] = None
    call: Optional["ToolCall"] = None


class ToolExecutionError(Exception):
    """The tool ran but failed; ``payload`` is still shown to the model."""

    def __init__(self, message: str, *, payload: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]
AvailabilityPredicate = Callable[[Settings], bool]


def always_available(settings: Settings) -> bool:
    return True


def requires_settings(*names: str) -> AvailabilityPredicate:
    """Predicate that is true only when every named setting is non-empty."""

    def _predicate(settings: Settings) -> bool:
        return all(bool(getattr(settings, name, None)) for name in names)

    _predicate.__name__ = f"requires_{'_'.join(names)}"
    return _predicate


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler
    cost: float = 0.0
    rate_limit: Optional[RateLimitPolicy] = None
    is_available: AvailabilityPredicate = always_available
    requires_sandbox: bool = False
    mandatory: bool = False
    required_credentials: Tuple[str, ...] = ()

    def missing_credentials(self, settings: Settings) -> List[str]:
        return [name for name in self.required_credentials if not getattr(settings, name, None)]

    def available(self, settings: Settings) -> bool:
        """Credentials present and the availability predicate holds."""
        return not self.missing_credentials(settings) and self.is_available(settings)

    def provider_schema(self) -> Dict[str, Any]:
        """Function-calling schema in the OpenAI ``tools`` format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass(frozen=True)
class ToolCall:
    """A validated invocation, bound to the turn session that asked for it."""

    name: str
    arguments: Dict[str, Any]
    session_id: str
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:24]}")


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    success: bool
    payload: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    def as_message_content(self) -> str:
        if self.success:
            body: Dict[str, Any] = {"ok": True, "result": self.payload}
        else:
            body = {"ok": False, "error": self.error or "tool failed"}
            if self.payload is not None:
                body["result"] = self.payload
        return json.dumps(body, default=str, ensure_ascii=False)


class ToolRegistry:
    """Flat registry keyed by tool name.

    Availability is evaluated against ``settings_provider()`` on every call,
    so a credential removed from live config drops the tool from the next
    provider request instead of failing at dispatch time.
    """

    def __init__(self, settings_provider: Callable[[], Settings]) -> None:
        self._settings_provider = settings_provider
        self._tools: Dict[str, ToolDescriptor] = {}
        self._validators: Dict[str, Draft202012Validator] = {}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise DuplicateToolError(
                f"tool already registered: {descriptor.name}",
                detail={"tool": descriptor.name},
            )
        try:
            Draft202012Validator.check_schema(descriptor.input_schema)
        except SchemaError as exc:
            logger.error("tool_schema_invalid", tool=descriptor.name, error=exc.message)
            raise ToolArgumentError(
                f"invalid input schema for tool {descriptor.name}",
                detail={"tool": descriptor.name},
            ) from exc
        self._tools[descriptor.name] = descriptor
        self._validators[descriptor.name] = Draft202012Validator(descriptor.input_schema)

    def resolve(self, name: str) -> ToolDescriptor:
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise UnknownToolError(f"unknown tool: {name}", detail={"tool": name})
        settings = self._settings_provider()
        if not descriptor.available(settings):
            detail: Dict[str, Any] = {"tool": name}
            missing = descriptor.missing_credentials(settings)
            if missing:
                detail["missing_credentials"] = missing
            raise ToolUnavailableError(f"tool unavailable: {name}", detail=detail)
        return descriptor

    def list_available(self) -> Iterator[ToolDescriptor]:
        settings = self._settings_provider()
        for descriptor in self._tools.values():
            if descriptor.available(settings):
                yield descriptor

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [descriptor.provider_schema() for descriptor in self.list_available()]

    def validate_arguments(self, descriptor: ToolDescriptor, arguments: Any) -> Dict[str, Any]:
        if not isinstance(arguments, dict):
            raise ToolArgumentError(
                "tool arguments must be a JSON object", detail={"tool": descriptor.name}
            )
        validator = self._validators[descriptor.name]
        errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.path))
        if errors:
            raise ToolArgumentError(
                f"invalid arguments for {descriptor.name}",
                detail={"tool": descriptor.name, "errors": [e.message for e in errors]},
            )
        return arguments

    def missing_mandatory(self) -> List[str]:
        """Mandatory tools (by flag or by config) that are absent or unavailable."""
        settings = self._settings_provider()
        wanted = {d.name for d in self._tools.values() if d.mandatory}
        wanted.update(settings.mandatory_tools)
        missing = []
        for name in sorted(wanted):
            descriptor = self._tools.get(name)
            if descriptor is None or not descriptor.available(settings):
                missing.append(name)
        return missing


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    """Decode the provider's JSON argument string into a dict."""
    if isinstance(raw, dict):
        return raw
    if raw in (None, ""):
        return {}
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ToolArgumentError("tool arguments are not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise ToolArgumentError("tool arguments must be a JSON object")
    return decoded
